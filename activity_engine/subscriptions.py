"""
Subscription Manager - Refcounted push subscriptions with debounced reconciliation.

============================================================
PURPOSE
============================================================
For a push-capable chain, keep exactly one adapter subscription
per address no matter how many requesters monitor it, and turn
bursts of activity events into single reconciliation cycles.

============================================================
LIFECYCLE (keyed by address)
============================================================
acquire   refcount += 1; only 0→1 calls adapter.subscribe().
          A failed subscribe rolls the increment back and re-raises.
release   refcount -= 1; only 1→0 cancels the debounce timer,
          drops the seen-set and calls adapter.unsubscribe() once.
activity  (re)arms the address's debounce timer; a burst inside
          the window yields one reconciliation.

The first reconciliation after a fresh subscribe primes the
seen-set: existing records are persisted but not dispatched.
A reconciliation already running when the refcount hits zero
finishes, but nothing re-arms or re-subscribes afterwards.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from chain_adapters.base import BaseChainAdapter
from chain_adapters.exceptions import ChainAdapterError
from chain_adapters.models import Chain, SubscriptionHandle

from .pipeline import CycleReason, CycleResult, IngestionPipeline
from .seen import BoundedSeenSet
from .timers import RearmableTimer


logger = logging.getLogger(__name__)


@dataclass
class AddressSubscription:
    """Per-address subscription state, owned by SubscriptionManager."""
    address: str
    refcount: int
    seen: BoundedSeenSet
    handle: Optional[SubscriptionHandle] = None
    primed: bool = False
    closed: bool = False
    ready: Optional[asyncio.Future] = None
    error: Optional[BaseException] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def live(self) -> bool:
        return not self.closed and self.handle is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "refcount": self.refcount,
            "live": self.live,
            "primed": self.primed,
            "seen": len(self.seen),
        }


class SubscriptionManager:
    """
    Push subscription lifecycle for one chain.

    Usage:
        manager = SubscriptionManager(adapter, pipeline)
        await manager.acquire(address)
        ...
        await manager.release(address)
    """

    def __init__(
        self,
        adapter: BaseChainAdapter,
        pipeline: IngestionPipeline,
        debounce_seconds: float = 0.5,
        seen_capacity: int = 1000,
    ) -> None:
        self._adapter = adapter
        self._pipeline = pipeline
        self._debounce = debounce_seconds
        self._seen_capacity = seen_capacity

        self._subs: dict[str, AddressSubscription] = {}
        self._timer = RearmableTimer(name=f"{adapter.chain.value}-debounce")
        self._background: set[asyncio.Task] = set()

        self._stats = {
            "subscribes": 0,
            "subscribe_failures": 0,
            "unsubscribes": 0,
            "activity_events": 0,
            "ignored_events": 0,
            "reconciliations": 0,
            "primes": 0,
        }

    @property
    def chain(self) -> Chain:
        return self._adapter.chain

    # =========================================================
    # REFCOUNTED LIFECYCLE
    # =========================================================

    async def acquire(self, address: str) -> AddressSubscription:
        """
        Add one reference to the address's subscription.

        Raises:
            Whatever adapter.subscribe() raised, after rolling back
            this reference.
        """
        state = self._subs.get(address)
        if state is not None:
            state.refcount += 1
            if state.ready is not None and not state.ready.done():
                # Another caller is mid-subscribe; share its outcome
                ok = await asyncio.shield(state.ready)
                if not ok:
                    state.refcount -= 1
                    raise state.error
            return state

        state = AddressSubscription(
            address=address,
            refcount=1,
            seen=BoundedSeenSet(self._seen_capacity),
            ready=asyncio.get_running_loop().create_future(),
        )
        self._subs[address] = state

        try:
            handle = await self._adapter.subscribe(address, self.on_activity)
        except Exception as e:
            state.refcount -= 1
            state.closed = True
            state.error = e
            if self._subs.get(address) is state:
                del self._subs[address]
            state.ready.set_result(False)
            self._stats["subscribe_failures"] += 1
            logger.warning(f"[{self.chain.value}] Subscribe failed for {address}: {e}")
            raise

        self._stats["subscribes"] += 1

        if state.closed:
            # Released to zero while subscribe was in flight
            state.ready.set_result(True)
            await self._unsubscribe(address, handle)
            return state

        state.handle = handle
        state.ready.set_result(True)
        logger.info(f"[{self.chain.value}] Subscribed to account activity for {address}")

        self._spawn(self._prime(state))
        return state

    async def release(self, address: str) -> bool:
        """
        Drop one reference.

        Returns True if this call tore the subscription down.
        """
        state = self._subs.get(address)
        if state is None:
            return False

        state.refcount -= 1
        if state.refcount > 0:
            return False

        state.closed = True
        del self._subs[address]
        self._timer.cancel(address)
        state.seen.clear()

        handle, state.handle = state.handle, None
        if handle is not None:
            await self._unsubscribe(address, handle)
        return True

    async def _unsubscribe(self, address: str, handle: SubscriptionHandle) -> None:
        try:
            await self._adapter.unsubscribe(handle)
            self._stats["unsubscribes"] += 1
            logger.info(f"[{self.chain.value}] Unsubscribed {address}")
        except ChainAdapterError as e:
            logger.warning(f"[{self.chain.value}] Unsubscribe failed for {address}: {e}")

    # =========================================================
    # ACTIVITY & RECONCILIATION
    # =========================================================

    async def on_activity(self, address: str) -> None:
        """Adapter callback: debounce a reconciliation for address."""
        state = self._subs.get(address)
        if state is None or not state.live:
            self._stats["ignored_events"] += 1
            return
        self._stats["activity_events"] += 1
        self._timer.arm(address, self._debounce, self._reconcile)

    async def _reconcile(self, address: str) -> Optional[CycleResult]:
        state = self._subs.get(address)
        if state is None or not state.live:
            return None
        return await self._run(state)

    async def _prime(self, state: AddressSubscription) -> Optional[CycleResult]:
        if not state.live:
            return None
        return await self._run(state)

    async def _run(self, state: AddressSubscription) -> Optional[CycleResult]:
        async with state.lock:
            if state.closed:
                return None

            priming = not state.primed
            result = await self._pipeline.run_cycle(
                state.address,
                self.chain,
                reason=CycleReason.PRIME if priming else CycleReason.PUSH,
                seen=state.seen,
                notify=not priming,
            )

            if priming:
                self._stats["primes"] += 1
                if result.ok:
                    state.primed = True
            else:
                self._stats["reconciliations"] += 1
            return result

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # =========================================================
    # QUERIES
    # =========================================================

    def is_subscribed(self, address: str) -> bool:
        state = self._subs.get(address)
        return state is not None and state.live

    def refcount(self, address: str) -> int:
        state = self._subs.get(address)
        return state.refcount if state is not None else 0

    def addresses(self) -> list[str]:
        return [a for a, s in self._subs.items() if s.live]

    async def wait_idle(self) -> None:
        """Wait for pending debounce timers and background priming."""
        while self._background or self._timer.pending():
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            await self._timer.drain()

    async def close(self) -> None:
        """Cancel timers and tear down every subscription."""
        await self._timer.cancel_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        for address, state in list(self._subs.items()):
            state.refcount = 1
            await self.release(address)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "chain": self.chain.value,
            "subscriptions": {a: s.to_dict() for a, s in self._subs.items()},
        }
