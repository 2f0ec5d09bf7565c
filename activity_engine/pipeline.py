"""
Ingestion Pipeline - One fetch → dedup → persist → checkpoint → notify cycle.

============================================================
PURPOSE
============================================================
Single code path shared by poll ticks, resync sweeps, push
reconciliations and manual refreshes for one (wallet, chain).

============================================================
ERROR CONTAINMENT
============================================================
run_cycle() never raises for adapter or storage failures. The
outcome is reported in CycleResult.status:

- OK            records persisted, checkpoint committed
- RATE_LIMITED  retries exhausted, wallet skipped this cycle
- UNAVAILABLE   adapter transiently failing, state unchanged
- FAILED        storage or unexpected error, checkpoint unchanged

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from chain_adapters.exceptions import (
    AdapterUnavailableError,
    ChainAdapterError,
    RateLimitedError,
    StorageError,
)
from chain_adapters.models import CanonicalTransaction, Chain, FetchResult
from chain_adapters.registry import AdapterRegistry
from chain_adapters.retry import RetryPolicy
from notifications.dispatcher import DispatchResult, NotificationDispatcher

from .checkpoint import CheckpointStore
from .dedup import TransactionDeduplicator
from .seen import BoundedSeenSet


logger = logging.getLogger(__name__)


class CycleStatus(str, Enum):
    """Outcome of one ingestion cycle."""
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


class CycleReason(str, Enum):
    """What triggered a cycle."""
    POLL = "poll"
    RESYNC = "resync"
    PUSH = "push"
    PRIME = "prime"
    MANUAL = "manual"


@dataclass
class CycleResult:
    """Report of one (wallet, chain) cycle."""
    wallet_address: str
    chain: Chain
    reason: CycleReason
    status: CycleStatus = CycleStatus.OK
    fetched: int = 0
    skipped_seen: int = 0
    inserted: list[CanonicalTransaction] = field(default_factory=list)
    duplicates: int = 0
    failed: int = 0
    checkpoint: Optional[int] = None
    dispatch: Optional[DispatchResult] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == CycleStatus.OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "wallet_address": self.wallet_address,
            "chain": self.chain.value,
            "reason": self.reason.value,
            "status": self.status.value,
            "fetched": self.fetched,
            "skipped_seen": self.skipped_seen,
            "inserted": len(self.inserted),
            "duplicates": self.duplicates,
            "failed": self.failed,
            "checkpoint": self.checkpoint,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
        }


class IngestionPipeline:
    """
    Runs ingestion cycles for any (wallet, chain).

    Usage:
        pipeline = IngestionPipeline(adapters, store, dispatcher)
        result = await pipeline.run_cycle(address, Chain.ETH)
    """

    def __init__(
        self,
        adapters: AdapterRegistry,
        deduplicator: TransactionDeduplicator,
        checkpoints: CheckpointStore,
        dispatcher: NotificationDispatcher,
        retry_policies: Optional[dict[Chain, RetryPolicy]] = None,
    ) -> None:
        self._adapters = adapters
        self._dedup = deduplicator
        self._checkpoints = checkpoints
        self._dispatcher = dispatcher
        self._retry_policies = retry_policies or {}
        self._default_retry = RetryPolicy()

        self._stats = {
            "cycles": 0,
            "ok": 0,
            "rate_limited": 0,
            "unavailable": 0,
            "failed": 0,
            "records_fetched": 0,
            "records_inserted": 0,
            "out_of_range_dropped": 0,
        }

    def retry_policy(self, chain: Chain) -> RetryPolicy:
        return self._retry_policies.get(chain, self._default_retry)

    async def run_cycle(
        self,
        wallet_address: str,
        chain: Chain,
        *,
        reason: CycleReason = CycleReason.POLL,
        seen: Optional[BoundedSeenSet] = None,
        notify: bool = True,
    ) -> CycleResult:
        """
        Run one full cycle for a wallet.

        Args:
            wallet_address: Normalized address
            chain: Chain to fetch from
            reason: Trigger, for logging and stats
            seen: Push seen-set; records already in it are skipped
                and persisted keys are added to it
            notify: False primes storage without dispatching alerts
        """
        result = CycleResult(wallet_address=wallet_address, chain=chain, reason=reason)
        self._stats["cycles"] += 1

        try:
            await self._run(result, seen, notify)
        except RateLimitedError as e:
            result.status = CycleStatus.RATE_LIMITED
            result.error = str(e)
            logger.warning(f"[{chain.value}] Skipping {wallet_address} this cycle: rate limited")
        except AdapterUnavailableError as e:
            result.status = CycleStatus.UNAVAILABLE
            result.error = str(e)
            logger.warning(f"[{chain.value}] Adapter unavailable for {wallet_address}: {e.message}")
        except StorageError as e:
            result.status = CycleStatus.FAILED
            result.error = str(e)
            logger.error(f"[{chain.value}] Storage failure for {wallet_address}: {e.message}")
        except ChainAdapterError as e:
            result.status = CycleStatus.FAILED
            result.error = str(e)
            logger.error(f"[{chain.value}] Cycle failed for {wallet_address}: {e}")
        except Exception as e:
            result.status = CycleStatus.FAILED
            result.error = str(e)
            logger.error(
                f"[{chain.value}] Unexpected error in {reason.value} cycle for {wallet_address}: {e}",
                exc_info=True,
            )

        self._stats[result.status.value] += 1
        return result

    async def _run(
        self,
        result: CycleResult,
        seen: Optional[BoundedSeenSet],
        notify: bool,
    ) -> None:
        address, chain = result.wallet_address, result.chain
        adapter = self._adapters.get(chain)
        retry = self.retry_policy(chain)

        checkpoint = await self._checkpoints.read(address, chain)

        balance = await retry.call(
            lambda: adapter.fetch_balance(address),
            description=f"{chain.value} balance {address}",
        )
        fetch = await retry.call(
            lambda: adapter.fetch_transactions_since(address, checkpoint),
            description=f"{chain.value} transactions {address}",
        )
        fetch = self._enforce_contract(fetch, address, chain, checkpoint)
        result.fetched = len(fetch.records)
        self._stats["records_fetched"] += result.fetched

        candidates = fetch.records
        if seen is not None:
            candidates = [r for r in fetch.records if r.dedup_key not in seen]
            result.skipped_seen = len(fetch.records) - len(candidates)

        outcome = await self._dedup.persist_new(candidates)
        result.inserted = outcome.inserted
        result.duplicates = len(outcome.duplicates) + len(outcome.conflicts)
        result.failed = len(outcome.failed)
        self._stats["records_inserted"] += len(outcome.inserted)

        if seen is not None:
            seen.update(r.dedup_key for r in outcome.inserted)
            seen.update(r.dedup_key for r in outcome.duplicates)
            seen.update(r.dedup_key for r in outcome.conflicts)

        commit_error: Optional[StorageError] = None
        try:
            state = await self._checkpoints.commit(
                address, chain, fetch, balance, failed=outcome.failed
            )
            result.checkpoint = state.checkpoint
        except StorageError as e:
            commit_error = e

        # Inserted rows will never be reported as new again, so they
        # are dispatched even if the checkpoint commit failed.
        if notify and outcome.inserted:
            result.dispatch = await self._dispatcher.dispatch(address, chain, outcome.inserted)

        if commit_error is not None:
            raise commit_error

        if outcome.inserted:
            logger.info(
                f"[{chain.value}] {address}: {len(outcome.inserted)} new records "
                f"({result.reason.value}{', not notified' if not notify else ''})"
            )

    def _enforce_contract(
        self,
        fetch: FetchResult,
        address: str,
        chain: Chain,
        checkpoint: Optional[int],
    ) -> FetchResult:
        """Drop records outside (checkpoint, ∞) or for another wallet/chain."""
        kept = [
            r for r in fetch.records
            if r.wallet_address == address
            and r.chain == chain
            and (checkpoint is None or r.cursor > checkpoint)
        ]
        dropped = len(fetch.records) - len(kept)
        if dropped:
            self._stats["out_of_range_dropped"] += dropped
            logger.warning(
                f"[{chain.value}] Dropped {dropped} records for {address} at or before "
                f"checkpoint {checkpoint} or not matching the wallet"
            )
            return FetchResult(records=kept, new_checkpoint=fetch.new_checkpoint)
        return fetch

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "dedup": self._dedup.get_stats(),
            "dispatcher": self._dispatcher.get_stats(),
        }
