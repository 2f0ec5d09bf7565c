"""
Chain Activity Engine - Facade over scheduling, subscriptions and ingestion.

============================================================
RESPONSIBILITY
============================================================
The only entry point callers use to monitor wallets.

- start_monitoring / stop_monitoring: registry + push lifecycle
- trigger_manual_refresh: one inline cycle
- list_active_monitors: read-only snapshot
- start / stop: background polling and resync loops

============================================================
WIRING
============================================================
    AdapterRegistry ─┐
    ActivityStore ───┼─► IngestionPipeline ◄── PollScheduler
    AlertSink ───────┘          ▲
                                └──────── SubscriptionManager (push chains)

============================================================
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from chain_adapters.exceptions import (
    ChainAdapterError,
    InvalidAddressError,
    UnsupportedCapabilityError,
)
from chain_adapters.models import ActiveMonitor, Chain
from chain_adapters.registry import AdapterRegistry
from notifications.dispatcher import AlertSink, NotificationDispatcher
from storage.interface import ActivityStore

from .checkpoint import CheckpointStore
from .config import EngineConfig, get_config
from .dedup import TransactionDeduplicator
from .pipeline import CycleReason, CycleResult, IngestionPipeline
from .registry import MonitorRegistry
from .scheduler import PollScheduler
from .subscriptions import SubscriptionManager


logger = logging.getLogger(__name__)


class ChainActivityEngine:
    """
    Multi-chain wallet activity engine.

    Usage:
        engine = ChainActivityEngine(adapters, store, sink=DiscordWebhookSink())
        async with engine:
            await engine.start_monitoring("0xabc...", "ETH", webhook_url)
            ...
    """

    def __init__(
        self,
        adapters: AdapterRegistry,
        store: ActivityStore,
        sink: Optional[AlertSink] = None,
        config: Optional[EngineConfig] = None,
        registry: Optional[MonitorRegistry] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or get_config()
        self._adapters = adapters
        self._store = store
        self._registry = registry or MonitorRegistry()
        self._dispatcher = NotificationDispatcher(self._registry, sink)

        retry_policies = {
            chain: self._config.settings_for(chain).retry_policy()
            for chain in adapters.chains()
        }
        self._pipeline = IngestionPipeline(
            adapters=adapters,
            deduplicator=TransactionDeduplicator(store),
            checkpoints=CheckpointStore(store),
            dispatcher=self._dispatcher,
            retry_policies=retry_policies,
        )

        self._subscriptions: dict[Chain, SubscriptionManager] = {
            chain: SubscriptionManager(
                adapters.get(chain),
                self._pipeline,
                debounce_seconds=self._config.debounce_seconds,
                seen_capacity=self._config.seen_set_capacity,
            )
            for chain in adapters.push_capable_chains()
        }
        # References this engine actually holds on each subscription
        self._push_refs: dict[tuple[Chain, str], int] = {}

        self._scheduler = PollScheduler(
            pipeline=self._pipeline,
            registry=self._registry,
            adapters=adapters,
            store=store,
            config=self._config,
            is_push_covered=self._is_push_covered,
            sleep=sleep,
        )

    # =========================================================
    # MONITOR MANAGEMENT
    # =========================================================

    async def start_monitoring(
        self,
        address: str,
        chain: "Chain | str",
        alert_target: Optional[str] = None,
    ) -> ActiveMonitor:
        """
        Register a wallet for monitoring.

        Does not wait for the first fetch. On push-capable chains a
        subscription is acquired; if that fails the wallet is polled.

        Raises:
            InvalidAddressError: Address malformed for the chain
            ChainNotConfiguredError: No adapter for the chain
            ValueError: Alert target rejected by the sink
        """
        chain = Chain.parse(chain)
        adapter = self._adapters.get(chain)
        normalized = adapter.validate_address(address)

        if alert_target is not None and not self._dispatcher.validate_target(alert_target):
            raise ValueError(f"Invalid alert target for {chain.value}: {alert_target!r}")

        monitor = self._registry.add(normalized, chain, alert_target)

        manager = self._subscriptions.get(chain)
        if manager is not None:
            # Counted before subscribing so a concurrent stop releases it
            key = (chain, normalized)
            self._push_refs[key] = self._push_refs.get(key, 0) + 1
            try:
                await manager.acquire(normalized)
            except UnsupportedCapabilityError:
                self._drop_push_ref(key)
                logger.info(f"[{chain.value}] Push unsupported, polling {normalized}")
            except ChainAdapterError as e:
                self._drop_push_ref(key)
                logger.warning(
                    f"[{chain.value}] Subscription failed for {normalized}, "
                    f"falling back to polling: {e.message}"
                )

        return monitor

    async def stop_monitoring(self, address: str, chain: "Chain | str") -> bool:
        """
        Drop one registration for a wallet.

        Returns False if the wallet was not registered. In-flight
        fetches are not cancelled.
        """
        chain = Chain.parse(chain)
        try:
            normalized = self._adapters.get(chain).validate_address(address)
        except (InvalidAddressError, ChainAdapterError):
            return False

        if self._registry.get(normalized, chain) is None:
            return False

        self._registry.remove(normalized, chain)

        if self._drop_push_ref((chain, normalized)):
            await self._subscriptions[chain].release(normalized)

        return True

    def _drop_push_ref(self, key: tuple[Chain, str]) -> bool:
        """Forget one counted push reference. False if none was held."""
        refs = self._push_refs.get(key, 0)
        if refs <= 0:
            return False
        if refs == 1:
            del self._push_refs[key]
        else:
            self._push_refs[key] = refs - 1
        return True

    async def trigger_manual_refresh(
        self,
        address: str,
        chain: "Chain | str",
    ) -> CycleResult:
        """Run one fetch → dedup → persist → notify cycle inline."""
        chain = Chain.parse(chain)
        normalized = self._adapters.get(chain).validate_address(address)
        return await self._pipeline.run_cycle(normalized, chain, reason=CycleReason.MANUAL)

    def list_active_monitors(self) -> list[ActiveMonitor]:
        """Snapshot copies of every ActiveMonitor."""
        return self._registry.list()

    def _is_push_covered(self, address: str, chain: Chain) -> bool:
        manager = self._subscriptions.get(chain)
        return manager is not None and manager.is_subscribed(address)

    # =========================================================
    # ACCESSORS
    # =========================================================

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._pipeline

    @property
    def store(self) -> ActivityStore:
        return self._store

    def subscription_manager(self, chain: Chain) -> Optional[SubscriptionManager]:
        return self._subscriptions.get(chain)

    async def wait_idle(self) -> None:
        """Wait for pending push reconciliations (tests, graceful shutdown)."""
        for manager in self._subscriptions.values():
            await manager.wait_idle()

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        await self._scheduler.start()
        logger.info(
            f"Chain activity engine started for "
            f"{', '.join(c.value for c in self._adapters.chains())}"
        )

    async def stop(self) -> None:
        """Stop loops and tear down subscriptions."""
        await self._scheduler.stop()
        for manager in self._subscriptions.values():
            await manager.close()
        self._push_refs.clear()
        logger.info("Chain activity engine stopped")

    async def close(self) -> None:
        """Stop, then release sink, adapter and storage resources."""
        await self.stop()
        await self._dispatcher.close()
        await self._adapters.close()
        await self._store.close()

    async def __aenter__(self) -> "ChainActivityEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_monitors": len(self._registry),
            "pipeline": self._pipeline.get_stats(),
            "scheduler": self._scheduler.get_stats(),
            "subscriptions": {
                chain.value: manager.get_stats()
                for chain, manager in self._subscriptions.items()
            },
            "adapters": self._adapters.get_stats(),
        }


def build_engine(
    adapters: AdapterRegistry,
    sink: Optional[AlertSink] = None,
    config: Optional[EngineConfig] = None,
) -> ChainActivityEngine:
    """
    Build an engine backed by SqlActivityStore at config.database_url.

    Falls back to DATABASE_URL / the default SQLite file when the
    config carries no URL.
    """
    from storage.sql import SqlActivityStore

    config = config or get_config()
    store = SqlActivityStore(database_url=config.database_url)
    return ChainActivityEngine(adapters, store, sink=sink, config=config)
