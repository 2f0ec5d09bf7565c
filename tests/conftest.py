"""
Shared fixtures for the chain activity test suite.
"""

import pytest

from activity_engine.config import ChainSettings, EngineConfig
from chain_adapters.mock import MockAdapterConfig, MockChainAdapter
from chain_adapters.models import Chain
from chain_adapters.registry import AdapterRegistry
from storage.memory import InMemoryActivityStore

from tests.factories import make_tx


@pytest.fixture
def tx_factory():
    """Factory for canonical transaction records."""
    return make_tx


@pytest.fixture
def fast_config():
    """Engine config with no real waiting anywhere."""
    return EngineConfig(
        chains={
            chain: ChainSettings(
                chain=chain,
                poll_interval_seconds=0.01,
                inter_wallet_delay_seconds=0.0,
                max_attempts=3,
                retry_base_delay_seconds=0.0,
            )
            for chain in Chain
        },
        resync_enabled=False,
        debounce_seconds=0.05,
        seen_set_capacity=1000,
    )


@pytest.fixture
def store():
    """Fresh in-memory activity store."""
    return InMemoryActivityStore()


@pytest.fixture
def eth_adapter():
    """Polling-only mock adapter for ETH."""
    return MockChainAdapter(MockAdapterConfig(chain=Chain.ETH))


@pytest.fixture
def sol_adapter():
    """Push-capable mock adapter for SOL."""
    return MockChainAdapter(MockAdapterConfig(chain=Chain.SOL, push_capable=True))


@pytest.fixture
def adapters(eth_adapter, sol_adapter):
    """Registry with the ETH and SOL mock adapters."""
    registry = AdapterRegistry()
    registry.register(eth_adapter)
    registry.register(sol_adapter)
    return registry
