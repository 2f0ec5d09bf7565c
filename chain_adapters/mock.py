"""
Chain Adapters - Mock Adapter.

============================================================
PURPOSE
============================================================
Scripted in-process adapter for tests and local runs.

FEATURES:
- Scripted transaction history per address
- Strictly-after-checkpoint filtering
- Error injection per operation
- Optional push subscriptions with manual event emission
- Full call tracking

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .base import BaseChainAdapter
from .exceptions import AdapterUnavailableError, UnsupportedCapabilityError
from .models import (
    ActivityCallback,
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    FetchResult,
    SubscriptionHandle,
)


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockAdapterConfig:
    """Configuration for the mock adapter."""

    chain: Chain = Chain.ETH

    push_capable: bool = False
    """Whether subscribe()/unsubscribe() are available."""

    latency_seconds: float = 0.0
    """Simulated latency applied to every fetch."""

    default_balance: str = "0"
    """Balance reported for addresses without a scripted balance."""

    report_checkpoint: bool = True
    """Whether FetchResult.new_checkpoint is filled in."""

    fail_subscribe: bool = False
    """Whether subscribe() raises AdapterUnavailableError."""


class MockChainAdapter(BaseChainAdapter):
    """
    In-memory adapter driven by scripted records.

    Records are added with add_records(); fetch_transactions_since()
    returns those whose cursor is strictly greater than the checkpoint.
    Failures are queued per operation with fail_next().
    """

    def __init__(self, config: Optional[MockAdapterConfig] = None) -> None:
        super().__init__()
        self._config = config or MockAdapterConfig()

        self._records: Dict[str, List[CanonicalTransaction]] = {}
        self._balances: Dict[str, BalanceSnapshot] = {}
        self._failures: Dict[str, List[Exception]] = {}

        self._subscriptions: Dict[str, SubscriptionHandle] = {}
        self._callbacks: Dict[str, ActivityCallback] = {}

        self.calls: Dict[str, int] = {
            "fetch_balance": 0,
            "fetch_transactions_since": 0,
            "subscribe": 0,
            "unsubscribe": 0,
        }
        self.checkpoints_seen: List[Optional[int]] = []

    @property
    def chain(self) -> Chain:
        return self._config.chain

    @property
    def supports_push(self) -> bool:
        return self._config.push_capable

    # =========================================================
    # SCRIPTING
    # =========================================================

    def add_records(self, *records: CanonicalTransaction) -> None:
        """Append records to each record's wallet history."""
        for record in records:
            self._records.setdefault(record.wallet_address, []).append(record)

    def set_balance(self, address: str, balance: str, value_in_quote: Optional[str] = None) -> None:
        self._balances[address] = BalanceSnapshot(balance, value_in_quote)

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Queue an error raised by the next `times` calls of `operation`."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.pop(0)

    async def _simulate_latency(self) -> None:
        if self._config.latency_seconds > 0:
            await asyncio.sleep(self._config.latency_seconds)

    # =========================================================
    # ADAPTER CONTRACT
    # =========================================================

    async def fetch_balance(self, address: str) -> BalanceSnapshot:
        self.calls["fetch_balance"] += 1
        self._stats["balance_fetches"] += 1
        await self._simulate_latency()
        self._maybe_fail("fetch_balance")
        return self._balances.get(address, BalanceSnapshot(self._config.default_balance))

    async def fetch_transactions_since(
        self,
        address: str,
        checkpoint: Optional[int],
    ) -> FetchResult:
        self.calls["fetch_transactions_since"] += 1
        self._stats["transaction_fetches"] += 1
        self.checkpoints_seen.append(checkpoint)
        await self._simulate_latency()
        self._maybe_fail("fetch_transactions_since")

        history = self._records.get(address, [])
        if checkpoint is None:
            records = list(history)
        else:
            records = [r for r in history if r.cursor > checkpoint]

        self._stats["records_returned"] += len(records)

        new_checkpoint = None
        if self._config.report_checkpoint and records:
            new_checkpoint = max(r.cursor for r in records)

        return FetchResult(records=records, new_checkpoint=new_checkpoint)

    async def subscribe(
        self,
        address: str,
        on_activity: ActivityCallback,
    ) -> SubscriptionHandle:
        if not self._config.push_capable:
            return await super().subscribe(address, on_activity)

        self.calls["subscribe"] += 1
        self._maybe_fail("subscribe")
        if self._config.fail_subscribe:
            raise AdapterUnavailableError(
                "Subscription endpoint unavailable",
                chain=self.chain.value,
                address=address,
            )

        handle = SubscriptionHandle(
            chain=self.chain,
            address=address,
            subscription_id=uuid.uuid4().hex,
        )
        self._subscriptions[address] = handle
        self._callbacks[address] = on_activity
        logger.debug(f"[{self.name}] Subscribed {address}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if not self._config.push_capable:
            raise UnsupportedCapabilityError(
                f"{self.name} does not support push subscriptions",
                chain=self.chain.value,
                capability="unsubscribe",
            )

        self.calls["unsubscribe"] += 1
        current = self._subscriptions.get(handle.address)
        if current is not None and current.subscription_id == handle.subscription_id:
            del self._subscriptions[handle.address]
            self._callbacks.pop(handle.address, None)
        logger.debug(f"[{self.name}] Unsubscribed {handle.address}")

    # =========================================================
    # PUSH SIMULATION
    # =========================================================

    def is_subscribed(self, address: str) -> bool:
        return address in self._subscriptions

    async def emit_activity(self, address: str) -> bool:
        """
        Fire the activity callback for an address.

        Returns False when no subscription is open.
        """
        callback = self._callbacks.get(address)
        if callback is None:
            return False
        await callback(address)
        return True

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["calls"] = dict(self.calls)
        stats["open_subscriptions"] = len(self._subscriptions)
        return stats
