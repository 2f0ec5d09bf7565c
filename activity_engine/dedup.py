"""
Transaction Deduplicator - At-most-once persistence of canonical records.

============================================================
ALGORITHM
============================================================
For one wallet's candidate batch:
1. Collapse duplicate keys inside the batch (first one wins)
2. Probe storage for keys that already exist
3. Insert only the missing records; duplicate-key races are
   reported by the store as conflicts, not errors
4. Return exactly the newly inserted subset, in input order

Only PersistOutcome.inserted may flow on to notification, so
replaying the same fetch yields no new rows and no new alerts.

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from chain_adapters.exceptions import PersistenceConflictError
from chain_adapters.models import CanonicalTransaction, DedupKey
from storage.interface import ActivityStore, InsertOutcome


logger = logging.getLogger(__name__)


@dataclass
class PersistOutcome:
    """Result of persisting one candidate batch."""
    inserted: list[CanonicalTransaction] = field(default_factory=list)
    duplicates: list[CanonicalTransaction] = field(default_factory=list)
    conflicts: list[CanonicalTransaction] = field(default_factory=list)
    failed: list[CanonicalTransaction] = field(default_factory=list)

    @property
    def earliest_failed_cursor(self) -> Optional[int]:
        if not self.failed:
            return None
        return min(r.cursor for r in self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": len(self.inserted),
            "duplicates": len(self.duplicates),
            "conflicts": len(self.conflicts),
            "failed": len(self.failed),
        }


def unique_by_key(
    records: Iterable[CanonicalTransaction],
) -> tuple[list[CanonicalTransaction], list[CanonicalTransaction]]:
    """Split records into (first occurrence per key, repeats)."""
    seen: set[DedupKey] = set()
    unique: list[CanonicalTransaction] = []
    repeats: list[CanonicalTransaction] = []
    for record in records:
        key = record.dedup_key
        if key in seen:
            repeats.append(record)
        else:
            seen.add(key)
            unique.append(record)
    return unique, repeats


class TransactionDeduplicator:
    """Filters and persists candidate records against the store."""

    def __init__(self, store: ActivityStore) -> None:
        self._store = store
        self._stats = {
            "batches": 0,
            "candidates": 0,
            "inserted": 0,
            "duplicates": 0,
            "conflicts": 0,
            "failed": 0,
        }

    async def persist_new(self, records: list[CanonicalTransaction]) -> PersistOutcome:
        """
        Persist records not yet stored.

        Raises:
            StorageError: If the probe or the insert fails as a whole.
                Nothing is reported as inserted in that case.
        """
        outcome = PersistOutcome()
        self._stats["batches"] += 1
        self._stats["candidates"] += len(records)
        if not records:
            return outcome

        unique, repeats = unique_by_key(records)
        outcome.duplicates.extend(repeats)

        existing = await self._store.find_existing_keys(r.dedup_key for r in unique)
        missing = []
        for record in unique:
            if record.dedup_key in existing:
                outcome.duplicates.append(record)
            else:
                missing.append(record)

        if missing:
            try:
                result = await self._store.insert_transactions(missing)
            except PersistenceConflictError as e:
                result = await self._resolve_batch_conflict(missing, e)
            inserted_keys = {r.dedup_key for r in result.inserted}
            # Preserve input order regardless of store ordering
            outcome.inserted = [r for r in missing if r.dedup_key in inserted_keys]
            outcome.conflicts = list(result.conflicts)
            outcome.failed = list(result.failed)

            if result.conflicts:
                logger.debug(
                    f"{len(result.conflicts)} records inserted concurrently by another writer"
                )

        self._stats["inserted"] += len(outcome.inserted)
        self._stats["duplicates"] += len(outcome.duplicates)
        self._stats["conflicts"] += len(outcome.conflicts)
        self._stats["failed"] += len(outcome.failed)
        return outcome

    async def _resolve_batch_conflict(
        self,
        records: list[CanonicalTransaction],
        error: PersistenceConflictError,
    ) -> InsertOutcome:
        """
        Classify a batch the store rejected as a whole on a key conflict.

        Records now present were written by another writer; the rest
        are reported as failed so the checkpoint stays below them.
        """
        logger.warning(f"Batch rejected on key conflict, re-probing: {error.message}")
        existing = await self._store.find_existing_keys(r.dedup_key for r in records)
        outcome = InsertOutcome()
        for record in records:
            if record.dedup_key in existing:
                outcome.conflicts.append(record)
            else:
                outcome.failed.append(record)
        return outcome

    def get_stats(self) -> dict[str, int]:
        return dict(self._stats)
