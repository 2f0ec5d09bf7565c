"""
Chain Adapters Package - Canonical model and per-chain adapter contract.

Every supported chain plugs into the engine through a
BaseChainAdapter that returns CanonicalTransaction records.

Quick Start:
    from chain_adapters import (
        AdapterRegistry,
        Chain,
        MockAdapterConfig,
        MockChainAdapter,
    )

    registry = AdapterRegistry()
    registry.register(MockChainAdapter(MockAdapterConfig(chain=Chain.ETH)))

Adding New Adapters:
    class SolanaRpcAdapter(BaseChainAdapter):
        @property
        def chain(self) -> Chain:
            return Chain.SOL

        async def fetch_balance(self, address): ...
        async def fetch_transactions_since(self, address, checkpoint): ...
"""

from chain_adapters.base import BaseChainAdapter, normalize_address
from chain_adapters.exceptions import (
    AdapterUnavailableError,
    AlertDeliveryError,
    ChainAdapterError,
    ChainNotConfiguredError,
    InvalidAddressError,
    PersistenceConflictError,
    RateLimitedError,
    StorageError,
    UnsupportedCapabilityError,
)
from chain_adapters.mock import MockAdapterConfig, MockChainAdapter
from chain_adapters.models import (
    ActiveMonitor,
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    DedupKey,
    Direction,
    FetchResult,
    SubscriptionHandle,
    TxCategory,
    TxStatus,
    WalletChainState,
)
from chain_adapters.registry import AdapterRegistry
from chain_adapters.retry import RetryPolicy


__all__ = [
    # Base
    "BaseChainAdapter",
    "normalize_address",
    # Registry
    "AdapterRegistry",
    "RetryPolicy",
    # Mock
    "MockAdapterConfig",
    "MockChainAdapter",
    # Models
    "ActiveMonitor",
    "BalanceSnapshot",
    "CanonicalTransaction",
    "Chain",
    "DedupKey",
    "Direction",
    "FetchResult",
    "SubscriptionHandle",
    "TxCategory",
    "TxStatus",
    "WalletChainState",
    # Exceptions
    "AdapterUnavailableError",
    "AlertDeliveryError",
    "ChainAdapterError",
    "ChainNotConfiguredError",
    "InvalidAddressError",
    "PersistenceConflictError",
    "RateLimitedError",
    "StorageError",
    "UnsupportedCapabilityError",
]
