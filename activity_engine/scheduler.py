"""
Poll Scheduler - Per-chain polling loops and the full resync sweep.

============================================================
RESPONSIBILITY
============================================================
Drives IngestionPipeline cycles on a timer.

- One independent loop per configured chain
- Each tick snapshots the chain's active wallets and runs them
  strictly in sequence, pausing between wallets
- Wallets covered by a live push subscription are skipped
- A periodic resync sweep re-fetches every wallet known to
  storage, active or not

============================================================
DESIGN PRINCIPLES
============================================================
- Failure isolation: one wallet never blocks the others
- A failing tick never stops its chain's timer
- Chains never wait on each other

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from chain_adapters.models import Chain
from chain_adapters.registry import AdapterRegistry
from storage.interface import ActivityStore

from .config import EngineConfig
from .pipeline import CycleReason, CycleResult, IngestionPipeline
from .registry import MonitorRegistry


logger = logging.getLogger(__name__)


PushCoverage = Callable[[str, Chain], bool]


class PollScheduler:
    """Timer-driven polling over the monitor registry."""

    def __init__(
        self,
        pipeline: IngestionPipeline,
        registry: MonitorRegistry,
        adapters: AdapterRegistry,
        store: ActivityStore,
        config: EngineConfig,
        is_push_covered: Optional[PushCoverage] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._pipeline = pipeline
        self._registry = registry
        self._adapters = adapters
        self._store = store
        self._config = config
        self._is_push_covered = is_push_covered or (lambda address, chain: False)
        self._sleep = sleep

        self._running = False
        self._tasks: dict[str, asyncio.Task] = {}

        self._stats = {
            "ticks": 0,
            "tick_errors": 0,
            "wallet_cycles": 0,
            "push_skipped": 0,
            "resyncs": 0,
            "resync_cycles": 0,
        }

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================
    # SINGLE PASSES
    # =========================================================

    async def run_tick(self, chain: Chain) -> list[CycleResult]:
        """Poll every active, non-push wallet of one chain once."""
        self._stats["ticks"] += 1
        settings = self._config.settings_for(chain)
        results: list[CycleResult] = []

        snapshot = self._registry.list(chain)
        first = True
        for monitor in snapshot:
            address = monitor.wallet_address
            if self._is_push_covered(address, chain):
                self._stats["push_skipped"] += 1
                continue

            if not first and settings.inter_wallet_delay_seconds > 0:
                await self._sleep(settings.inter_wallet_delay_seconds)
            first = False

            # Stopped while this tick was running
            if not self._registry.is_active(address, chain):
                continue

            result = await self._run_wallet(address, chain, CycleReason.POLL)
            results.append(result)

        return results

    async def run_resync(self) -> list[CycleResult]:
        """Re-fetch every wallet known to storage on every configured chain."""
        self._stats["resyncs"] += 1
        results: list[CycleResult] = []

        states = await self._store.list_wallet_states()
        logger.info(f"Resync sweep over {len(states)} known wallets")

        for chain in self._adapters.chains():
            settings = self._config.settings_for(chain)
            chain_states = [s for s in states if s.chain == chain]
            for index, state in enumerate(chain_states):
                if index and settings.inter_wallet_delay_seconds > 0:
                    await self._sleep(settings.inter_wallet_delay_seconds)
                result = await self._run_wallet(
                    state.wallet_address, chain, CycleReason.RESYNC
                )
                results.append(result)
                self._stats["resync_cycles"] += 1

        return results

    async def _run_wallet(
        self,
        address: str,
        chain: Chain,
        reason: CycleReason,
    ) -> CycleResult:
        self._stats["wallet_cycles"] += 1
        return await self._pipeline.run_cycle(address, chain, reason=reason)

    # =========================================================
    # CONTINUOUS OPERATION
    # =========================================================

    async def start(self) -> None:
        """Start one loop per enabled chain plus the resync loop."""
        if self._running:
            return
        self._running = True

        for chain in self._adapters.chains():
            settings = self._config.settings_for(chain)
            if not settings.enabled:
                logger.info(f"[{chain.value}] Polling disabled")
                continue
            self._tasks[chain.value] = asyncio.create_task(
                self._chain_loop(chain), name=f"poll-{chain.value}"
            )
            logger.info(
                f"[{chain.value}] Polling every {settings.poll_interval_seconds:.1f}s"
            )

        if self._config.resync_enabled:
            self._tasks["resync"] = asyncio.create_task(
                self._resync_loop(), name="resync"
            )

    async def stop(self) -> None:
        """Stop all loops and wait for them to exit."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Poll scheduler stopped")

    async def _chain_loop(self, chain: Chain) -> None:
        settings = self._config.settings_for(chain)
        try:
            while self._running:
                try:
                    await self.run_tick(chain)
                except Exception as e:
                    self._stats["tick_errors"] += 1
                    logger.error(f"[{chain.value}] Poll tick failed: {e}", exc_info=True)

                await self._sleep(settings.poll_interval_seconds)
        except asyncio.CancelledError:
            logger.debug(f"[{chain.value}] Poll loop cancelled")
            raise

    async def _resync_loop(self) -> None:
        try:
            while self._running:
                await self._sleep(self._config.resync_interval_seconds)
                if not self._running:
                    break
                try:
                    await self.run_resync()
                except Exception as e:
                    logger.error(f"Resync sweep failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug("Resync loop cancelled")
            raise

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "running": self._running,
            "loops": sorted(self._tasks),
        }
