"""
Adapter Registry - Chain to adapter lookup.

One adapter serves each chain. The engine resolves adapters only
through this registry.
"""

import logging
from typing import Any, Optional

from chain_adapters.base import BaseChainAdapter
from chain_adapters.exceptions import ChainNotConfiguredError
from chain_adapters.models import Chain


logger = logging.getLogger(__name__)


class AdapterRegistry:
    """
    Central registry of chain adapters.

    Usage:
        registry = AdapterRegistry()
        registry.register(MockChainAdapter(MockAdapterConfig(chain=Chain.SOL)))

        adapter = registry.get(Chain.SOL)
    """

    def __init__(self) -> None:
        self._adapters: dict[Chain, BaseChainAdapter] = {}

    def register(self, adapter: BaseChainAdapter) -> None:
        """Register an adapter for its chain, replacing any existing one."""
        chain = adapter.chain
        if chain in self._adapters:
            logger.warning(f"Adapter for {chain.value} already registered, replacing")
        self._adapters[chain] = adapter
        logger.info(
            f"Registered adapter '{adapter.name}' for {chain.value} "
            f"(push={adapter.supports_push})"
        )

    def unregister(self, chain: Chain) -> Optional[BaseChainAdapter]:
        adapter = self._adapters.pop(chain, None)
        if adapter is not None:
            logger.info(f"Unregistered adapter for {chain.value}")
        return adapter

    def get(self, chain: Chain) -> BaseChainAdapter:
        """
        Get the adapter for a chain.

        Raises:
            ChainNotConfiguredError: If no adapter is registered
        """
        adapter = self._adapters.get(chain)
        if adapter is None:
            raise ChainNotConfiguredError(
                f"No adapter registered for {chain.value}",
                chain=chain.value,
                configured_chains=[c.value for c in self._adapters],
            )
        return adapter

    def has(self, chain: Chain) -> bool:
        return chain in self._adapters

    def chains(self) -> list[Chain]:
        return list(self._adapters)

    def push_capable_chains(self) -> list[Chain]:
        return [c for c, a in self._adapters.items() if a.supports_push]

    def get_stats(self) -> dict[str, Any]:
        return {
            chain.value: adapter.get_stats()
            for chain, adapter in self._adapters.items()
        }

    async def close(self) -> None:
        """Close all adapters."""
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.error(f"Error closing adapter {adapter.name}: {e}")
        self._adapters.clear()
        logger.info("Adapter registry closed")

    async def __aenter__(self) -> "AdapterRegistry":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
