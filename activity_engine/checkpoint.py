"""
Checkpoint Store - Gap recovery bounds for incremental fetches.

============================================================
RULES
============================================================
- read(): the stored checkpoint is the exclusive lower bound of
  the next fetch (None means full backfill)
- commit(): stored = max(stored, candidate); never regresses
- commit only after the fetched records are durably persisted
- partial persistence failure caps the candidate just below the
  earliest failed record, so the next fetch re-includes it
- no adapter checkpoint: fall back to the highest record cursor;
  no records: the checkpoint is unchanged

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from chain_adapters.models import (
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    FetchResult,
    WalletChainState,
)
from storage.interface import ActivityStore


logger = logging.getLogger(__name__)


def safe_checkpoint(
    fetch: FetchResult,
    failed: Optional[list[CanonicalTransaction]] = None,
) -> Optional[int]:
    """
    Checkpoint candidate that leaves no unpersisted record behind.

    Returns None when the checkpoint must stay where it is.
    """
    candidate = fetch.new_checkpoint
    if candidate is None:
        candidate = fetch.max_cursor

    if failed:
        earliest = min(r.cursor for r in failed)
        cap = earliest - 1
        if candidate is None or cap < candidate:
            candidate = cap

    return candidate


class CheckpointStore:
    """Reads and commits per-(wallet, chain) checkpoints."""

    def __init__(self, store: ActivityStore) -> None:
        self._store = store

    async def read(self, wallet_address: str, chain: Chain) -> Optional[int]:
        state = await self._store.get_wallet_state(wallet_address, chain)
        return state.checkpoint if state is not None else None

    async def commit(
        self,
        wallet_address: str,
        chain: Chain,
        fetch: FetchResult,
        balance: Optional[BalanceSnapshot],
        failed: Optional[list[CanonicalTransaction]] = None,
        fetched_at: Optional[datetime] = None,
    ) -> WalletChainState:
        """
        Record a successful cycle.

        Call only after persistence of `fetch.records` has returned.
        """
        candidate = safe_checkpoint(fetch, failed)
        if failed:
            logger.warning(
                f"[{chain.value}] {len(failed)} records for {wallet_address} not persisted, "
                f"checkpoint capped at {candidate}"
            )

        state = await self._store.record_fetch(
            wallet_address,
            chain,
            balance,
            fetched_at or datetime.now(timezone.utc),
            candidate,
        )
        logger.debug(
            f"[{chain.value}] {wallet_address} checkpoint={state.checkpoint} "
            f"(candidate={candidate})"
        )
        return state
