"""
Activity Engine Package - Multi-chain wallet activity ingestion.

Detects new transactions for monitored wallets, persists each one
exactly once and dispatches alerts only for newly stored records.

Quick Start:
    from activity_engine import ChainActivityEngine, EngineConfig
    from chain_adapters import AdapterRegistry
    from storage import InMemoryActivityStore

    adapters = AdapterRegistry()
    adapters.register(my_eth_adapter)

    engine = ChainActivityEngine(adapters, InMemoryActivityStore(), config=EngineConfig.defaults())
    async with engine:
        await engine.start_monitoring("0x...", "ETH", "https://discord.com/api/webhooks/...")
"""

from .checkpoint import CheckpointStore, safe_checkpoint
from .config import ChainSettings, EngineConfig, get_config, set_config
from .dedup import PersistOutcome, TransactionDeduplicator
from .engine import ChainActivityEngine, build_engine
from .pipeline import CycleReason, CycleResult, CycleStatus, IngestionPipeline
from .registry import MonitorRegistry
from .scheduler import PollScheduler
from .seen import BoundedSeenSet
from .subscriptions import SubscriptionManager
from .timers import RearmableTimer


__all__ = [
    "ChainActivityEngine",
    "build_engine",
    "ChainSettings",
    "EngineConfig",
    "get_config",
    "set_config",
    "CheckpointStore",
    "safe_checkpoint",
    "PersistOutcome",
    "TransactionDeduplicator",
    "CycleReason",
    "CycleResult",
    "CycleStatus",
    "IngestionPipeline",
    "MonitorRegistry",
    "PollScheduler",
    "BoundedSeenSet",
    "SubscriptionManager",
    "RearmableTimer",
]
