"""
SQL Activity Store.

============================================================
PURPOSE
============================================================
ActivityStore backed by SQLAlchemy 2.0 (PostgreSQL or SQLite).

============================================================
INSERT STRATEGY
============================================================
1. Fast path: the whole batch in one transaction, each row an
   INSERT ... ON CONFLICT DO NOTHING. Rowcount tells inserted
   from conflict.
2. If the batch transaction fails for any other reason, every
   row is retried in its own transaction so one bad row only
   fails itself.

============================================================
THREADING
============================================================
Sessions are synchronous. Every transaction runs in a worker
thread via asyncio.to_thread, so a slow database never stalls
poll timers, debounce timers or adapter calls on the event loop.

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from chain_adapters.exceptions import StorageError
from chain_adapters.models import (
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    DedupKey,
    WalletChainState,
)
from storage.engine import (
    DatabasePersistenceError,
    create_database_engine,
    create_session_factory,
    initialize_database,
    transaction_scope,
)
from storage.interface import ActivityStore, InsertOutcome
from storage.repositories.activity import TransactionRepository, WalletStateRepository
from storage.repositories.exceptions import DuplicateRecordError, RepositoryException


logger = logging.getLogger(__name__)


class SqlActivityStore(ActivityStore):
    """
    SQLAlchemy-backed ActivityStore.

    Sessions are synchronous and short-lived; each public method
    owns exactly one transaction (except the per-row fallback)
    and runs it off the event loop.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        database_url: Optional[str] = None,
        create_tables: bool = True,
    ) -> None:
        self._owns_engine = engine is None
        self._engine = engine or create_database_engine(database_url)
        self._factory: sessionmaker = create_session_factory(self._engine)

        self._stats = {
            "batches": 0,
            "batch_fallbacks": 0,
            "inserted": 0,
            "conflicts": 0,
            "failed": 0,
        }

        if create_tables:
            initialize_database(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    # =========================================================
    # TRANSACTIONS
    # =========================================================

    async def find_existing_keys(self, keys: Iterable[DedupKey]) -> set[DedupKey]:
        keys = list(keys)
        try:
            return await asyncio.to_thread(self._find_existing_keys, keys)
        except (RepositoryException, DatabasePersistenceError) as e:
            raise StorageError(f"Existing-key probe failed: {e}", original_error=e) from e

    def _find_existing_keys(self, keys: list[DedupKey]) -> set[DedupKey]:
        with transaction_scope(self._factory) as session:
            return TransactionRepository(session).find_existing_keys(keys)

    async def insert_transactions(
        self,
        records: list[CanonicalTransaction],
    ) -> InsertOutcome:
        if not records:
            return InsertOutcome()

        self._stats["batches"] += 1
        try:
            outcome = await asyncio.to_thread(self._insert_batch, records)
        except (RepositoryException, DatabasePersistenceError) as e:
            self._stats["batch_fallbacks"] += 1
            logger.warning(
                f"Batch insert of {len(records)} records failed ({e}), "
                f"retrying row by row"
            )
            outcome = await asyncio.to_thread(self._insert_rows, records)

        self._stats["inserted"] += len(outcome.inserted)
        self._stats["conflicts"] += len(outcome.conflicts)
        self._stats["failed"] += len(outcome.failed)
        return outcome

    def _insert_batch(self, records: list[CanonicalTransaction]) -> InsertOutcome:
        outcome = InsertOutcome()
        with transaction_scope(self._factory) as session:
            repo = TransactionRepository(session)
            for record in records:
                if repo.insert_ignore_conflict(record):
                    outcome.inserted.append(record)
                else:
                    outcome.conflicts.append(record)
        return outcome

    def _insert_rows(self, records: list[CanonicalTransaction]) -> InsertOutcome:
        outcome = InsertOutcome()
        for record in records:
            try:
                with transaction_scope(self._factory) as session:
                    TransactionRepository(session).insert_strict(record)
                outcome.inserted.append(record)
            except DuplicateRecordError:
                outcome.conflicts.append(record)
            except (RepositoryException, DatabasePersistenceError) as e:
                logger.error(f"Failed to persist {record.dedup_key}: {e}")
                outcome.failed.append(record)
        return outcome

    async def list_transactions(
        self,
        wallet_address: Optional[str] = None,
        chain: Optional[Chain] = None,
        limit: Optional[int] = None,
    ) -> list[CanonicalTransaction]:
        try:
            return await asyncio.to_thread(
                self._list_transactions, wallet_address, chain, limit
            )
        except (RepositoryException, DatabasePersistenceError) as e:
            raise StorageError(f"Transaction listing failed: {e}", original_error=e) from e

    def _list_transactions(
        self,
        wallet_address: Optional[str],
        chain: Optional[Chain],
        limit: Optional[int],
    ) -> list[CanonicalTransaction]:
        with transaction_scope(self._factory) as session:
            rows = TransactionRepository(session).list_recent(wallet_address, chain, limit)
            return [row.to_canonical() for row in rows]

    # =========================================================
    # WALLET STATE
    # =========================================================

    async def get_wallet_state(
        self,
        wallet_address: str,
        chain: Chain,
    ) -> Optional[WalletChainState]:
        try:
            return await asyncio.to_thread(self._get_wallet_state, wallet_address, chain)
        except (RepositoryException, DatabasePersistenceError) as e:
            raise StorageError(
                f"Wallet state read failed: {e}",
                chain=chain.value,
                address=wallet_address,
                original_error=e,
            ) from e

    def _get_wallet_state(
        self,
        wallet_address: str,
        chain: Chain,
    ) -> Optional[WalletChainState]:
        with transaction_scope(self._factory) as session:
            row = WalletStateRepository(session).get(wallet_address, chain)
            return row.to_state() if row is not None else None

    async def record_fetch(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> WalletChainState:
        try:
            return await asyncio.to_thread(
                self._record_fetch,
                wallet_address,
                chain,
                balance,
                fetched_at,
                checkpoint_candidate,
            )
        except (RepositoryException, DatabasePersistenceError) as e:
            raise StorageError(
                f"Wallet state update failed: {e}",
                chain=chain.value,
                address=wallet_address,
                original_error=e,
            ) from e

    def _record_fetch(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> WalletChainState:
        with transaction_scope(self._factory) as session:
            repo = WalletStateRepository(session)
            repo.record_fetch(
                wallet_address, chain, balance, fetched_at, checkpoint_candidate
            )
            session.flush()
            session.expire_all()
            row = repo.get(wallet_address, chain)
            return row.to_state()

    async def list_wallet_states(
        self,
        chain: Optional[Chain] = None,
    ) -> list[WalletChainState]:
        try:
            return await asyncio.to_thread(self._list_wallet_states, chain)
        except (RepositoryException, DatabasePersistenceError) as e:
            raise StorageError(f"Wallet state listing failed: {e}", original_error=e) from e

    def _list_wallet_states(self, chain: Optional[Chain]) -> list[WalletChainState]:
        with transaction_scope(self._factory) as session:
            return [row.to_state() for row in WalletStateRepository(session).list_states(chain)]

    def get_stats(self) -> dict:
        return dict(self._stats)

    async def close(self) -> None:
        if self._owns_engine:
            await asyncio.to_thread(self._engine.dispose)
