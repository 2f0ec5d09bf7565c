"""
Chain Activity Repositories.

============================================================
REPOSITORIES
============================================================
TransactionRepository
    Append-only access to chain_transactions. Inserts ignore
    dedup-key conflicts instead of failing the transaction.

WalletStateRepository
    Upserts wallet_chain_state with a monotonic checkpoint
    computed inside the statement itself.

============================================================
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chain_adapters.models import (
    BalanceSnapshot,
    CanonicalTransaction,
    Chain,
    DedupKey,
)
from storage.models.activity import TransactionRecord, WalletChainStateRecord
from storage.repositories.base import BaseRepository


# Dialects with native INSERT ... ON CONFLICT
_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}

_KEY_PROBE_CHUNK = 500


class TransactionRepository(BaseRepository[TransactionRecord]):
    """Data access for persisted canonical transactions."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, TransactionRecord, "TransactionRepository")

    def _dialect_insert(self):
        return _UPSERT_DIALECTS.get(self._session.get_bind().dialect.name)

    def find_existing_keys(self, keys: Iterable[DedupKey]) -> set[DedupKey]:
        """Return the subset of keys already present."""
        wanted = set(keys)
        if not wanted:
            return set()

        found: set[DedupKey] = set()
        hashes = sorted({k.tx_hash for k in wanted})
        try:
            for start in range(0, len(hashes), _KEY_PROBE_CHUNK):
                chunk = hashes[start:start + _KEY_PROBE_CHUNK]
                stmt = select(
                    TransactionRecord.tx_hash,
                    TransactionRecord.wallet_address,
                    TransactionRecord.token,
                ).where(TransactionRecord.tx_hash.in_(chunk))
                for row in self._session.execute(stmt):
                    key = DedupKey(row.tx_hash, row.wallet_address, row.token)
                    if key in wanted:
                        found.add(key)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "find_existing_keys", {"keys": len(wanted)})
        return found

    def insert_ignore_conflict(self, tx: CanonicalTransaction) -> bool:
        """
        Insert one record.

        Returns:
            True if the row was stored, False if its dedup key already existed
        """
        values = TransactionRecord.values_from_canonical(tx)
        dialect_insert = self._dialect_insert()

        try:
            if dialect_insert is not None:
                stmt = dialect_insert(TransactionRecord).values(**values).on_conflict_do_nothing(
                    index_elements=["tx_hash", "wallet_address", "token"]
                )
                result = self._session.execute(stmt)
                return result.rowcount == 1

            try:
                with self._session.begin_nested():
                    self._session.add(TransactionRecord(**values))
            except SQLAlchemyIntegrityError:
                return False
            return True
        except SQLAlchemyError as e:
            self._handle_db_error(e, "insert", {"key": tx.dedup_key})

    def insert_strict(self, tx: CanonicalTransaction) -> None:
        """
        Insert one record, raising DuplicateRecordError on a key conflict.

        Used by the per-row fallback, where each row owns its transaction.
        """
        try:
            self._session.add(TransactionRecord.from_canonical(tx))
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "insert_strict", {"key": tx.dedup_key})

    def list_recent(
        self,
        wallet_address: Optional[str] = None,
        chain: Optional[Chain] = None,
        limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        stmt = select(TransactionRecord)
        if wallet_address is not None:
            stmt = stmt.where(TransactionRecord.wallet_address == wallet_address)
        if chain is not None:
            stmt = stmt.where(TransactionRecord.chain == chain.value)
        stmt = stmt.order_by(TransactionRecord.cursor.desc(), TransactionRecord.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._execute_query(stmt, "list_recent")


class WalletStateRepository(BaseRepository[WalletChainStateRecord]):
    """Data access for per-(wallet, chain) state."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, WalletChainStateRecord, "WalletStateRepository")

    def get(self, wallet_address: str, chain: Chain) -> Optional[WalletChainStateRecord]:
        try:
            return self._session.get(WalletChainStateRecord, (wallet_address, chain.value))
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get", {"wallet": wallet_address, "chain": chain.value})

    def list_states(self, chain: Optional[Chain] = None) -> List[WalletChainStateRecord]:
        stmt = select(WalletChainStateRecord)
        if chain is not None:
            stmt = stmt.where(WalletChainStateRecord.chain == chain.value)
        stmt = stmt.order_by(WalletChainStateRecord.chain, WalletChainStateRecord.wallet_address)
        return self._execute_query(stmt, "list_states")

    def record_fetch(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> None:
        """
        Upsert balance and last-fetch time; checkpoint = max(stored, candidate).

        The max is evaluated by the database in the same statement,
        so concurrent writers can never move the checkpoint backwards.
        """
        context = {"wallet": wallet_address, "chain": chain.value}
        dialect_insert = _UPSERT_DIALECTS.get(self._session.get_bind().dialect.name)

        try:
            if dialect_insert is not None:
                self._upsert_native(
                    dialect_insert, wallet_address, chain, balance, fetched_at, checkpoint_candidate
                )
            else:
                self._upsert_portable(
                    wallet_address, chain, balance, fetched_at, checkpoint_candidate
                )
        except SQLAlchemyError as e:
            self._handle_db_error(e, "record_fetch", context)

    def _upsert_native(
        self,
        dialect_insert,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> None:
        stmt = dialect_insert(WalletChainStateRecord).values(
            wallet_address=wallet_address,
            chain=chain.value,
            balance=balance.balance if balance else "0",
            value_in_quote=balance.value_in_quote if balance else None,
            last_fetched_at=fetched_at,
            checkpoint=checkpoint_candidate,
        )
        stored = WalletChainStateRecord.checkpoint
        proposed = stmt.excluded.checkpoint

        set_ = {
            "last_fetched_at": stmt.excluded.last_fetched_at,
            "updated_at": func.now(),
            "checkpoint": case(
                (stored.is_(None), proposed),
                (and_(proposed.is_not(None), proposed > stored), proposed),
                else_=stored,
            ),
        }
        if balance is not None:
            set_["balance"] = stmt.excluded.balance
            set_["value_in_quote"] = stmt.excluded.value_in_quote

        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "chain"],
            set_=set_,
        )
        self._session.execute(stmt)

    def _upsert_portable(
        self,
        wallet_address: str,
        chain: Chain,
        balance: Optional[BalanceSnapshot],
        fetched_at: datetime,
        checkpoint_candidate: Optional[int],
    ) -> None:
        stored = WalletChainStateRecord.checkpoint
        values = {"last_fetched_at": fetched_at}
        if balance is not None:
            values["balance"] = balance.balance
            values["value_in_quote"] = balance.value_in_quote
        if checkpoint_candidate is not None:
            values["checkpoint"] = case(
                (or_(stored.is_(None), stored < checkpoint_candidate), checkpoint_candidate),
                else_=stored,
            )

        stmt = (
            update(WalletChainStateRecord)
            .where(
                WalletChainStateRecord.wallet_address == wallet_address,
                WalletChainStateRecord.chain == chain.value,
            )
            .values(**values)
        )
        result = self._session.execute(stmt)
        if result.rowcount:
            return

        self._session.add(
            WalletChainStateRecord(
                wallet_address=wallet_address,
                chain=chain.value,
                balance=balance.balance if balance else "0",
                value_in_quote=balance.value_in_quote if balance else None,
                last_fetched_at=fetched_at,
                checkpoint=checkpoint_candidate,
            )
        )
        self._session.flush()
