"""
Rearmable single-slot timers keyed by address.

arm(key, delay, callback) schedules callback(key) after `delay`
seconds. Re-arming before the delay elapses replaces the pending
call, so a burst of arms collapses into one callback. Once the
callback starts it is detached from the slot: a later arm or
cancel never interrupts a running callback.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable, Optional


logger = logging.getLogger(__name__)


class RearmableTimer:
    """Keyed debounce timers on the running event loop."""

    def __init__(self, name: str = "timer") -> None:
        self._name = name
        self._pending: dict[Hashable, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def arm(
        self,
        key: Hashable,
        delay: float,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        """Schedule callback(key) after delay, replacing any pending call."""
        existing = self._pending.pop(key, None)
        if existing is not None and not existing.done():
            existing.cancel()

        task = asyncio.create_task(self._fire(key, delay, callback))
        self._pending[key] = task

    async def _fire(
        self,
        key: Hashable,
        delay: float,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        await asyncio.sleep(delay)

        task = asyncio.current_task()
        if self._pending.get(key) is task:
            del self._pending[key]
        self._running.add(task)
        try:
            await callback(key)
        except Exception as e:
            logger.error(f"[{self._name}] Callback for {key} failed: {e}", exc_info=True)
        finally:
            self._running.discard(task)

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending call for key. Returns True if one was pending."""
        task = self._pending.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self, key: Optional[Hashable] = None) -> bool:
        """Whether a call is pending for key (or for any key)."""
        if key is None:
            return any(not t.done() for t in self._pending.values())
        task = self._pending.get(key)
        return task is not None and not task.done()

    async def cancel_all(self, wait_running: bool = True) -> None:
        """Cancel every pending call and optionally await running callbacks."""
        for task in self._pending.values():
            task.cancel()
        pending = list(self._pending.values())
        self._pending.clear()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if wait_running and self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def drain(self) -> None:
        """Wait until no call is pending or running."""
        while self._pending or self._running:
            await asyncio.gather(
                *list(self._pending.values()), *list(self._running),
                return_exceptions=True,
            )
