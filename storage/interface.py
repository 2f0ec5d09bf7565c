"""
Activity Store Interface.

============================================================
PURPOSE
============================================================
Abstract persistence contract consumed by the ingestion engine.
The engine depends only on this interface; the backing engine
(in-memory, SQLite, PostgreSQL) is chosen by the caller.

============================================================
REQUIREMENTS ON IMPLEMENTATIONS
============================================================
- Uniqueness on (tx_hash, wallet_address, token)
- insert_transactions tolerates duplicate-key races without
  aborting the remaining inserts
- record_fetch applies checkpoint = max(stored, candidate)
  atomically, so concurrent writers cannot regress it

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from chain_adapters.models import (
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    DedupKey,
    WalletChainState,
)


@dataclass
class InsertOutcome:
    """Per-record result of a batch insert."""
    inserted: list[CanonicalTransaction] = field(default_factory=list)
    conflicts: list[CanonicalTransaction] = field(default_factory=list)
    failed: list[CanonicalTransaction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": len(self.inserted),
            "conflicts": len(self.conflicts),
            "failed": len(self.failed),
        }


def merge_checkpoint(stored: Optional[int], candidate: Optional[int]) -> Optional[int]:
    """Monotonic checkpoint merge: never moves backwards."""
    if candidate is None:
        return stored
    if stored is None:
        return candidate
    return max(stored, candidate)


class ActivityStore(ABC):
    """Durable store for canonical transactions and per-wallet chain state."""

    @abstractmethod
    async def find_existing_keys(
        self,
        keys: Iterable[DedupKey],
    ) -> set[DedupKey]:
        """Return the subset of keys already stored."""
        pass

    @abstractmethod
    async def insert_transactions(
        self,
        records: list[CanonicalTransaction],
    ) -> InsertOutcome:
        """
        Insert records, reporting each as inserted, conflict or failed.

        A unique-key conflict on one record never prevents the others
        from being inserted. Stores that cannot classify conflicts per
        record may instead raise PersistenceConflictError for the batch.
        """
        pass

    @abstractmethod
    async def get_wallet_state(
        self,
        wallet_address: str,
        chain: Chain,
    ) -> Optional[WalletChainState]:
        pass

    @abstractmethod
    async def record_fetch(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> WalletChainState:
        """
        Upsert wallet state after a successful cycle.

        The checkpoint becomes max(stored, checkpoint_candidate) and the
        balance is replaced when one is given.
        """
        pass

    @abstractmethod
    async def list_wallet_states(
        self,
        chain: Optional[Chain] = None,
    ) -> list[WalletChainState]:
        """All known (wallet, chain) states, optionally for one chain."""
        pass

    @abstractmethod
    async def list_transactions(
        self,
        wallet_address: Optional[str] = None,
        chain: Optional[Chain] = None,
        limit: Optional[int] = None,
    ) -> list[CanonicalTransaction]:
        """Stored records, newest cursor first."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None
