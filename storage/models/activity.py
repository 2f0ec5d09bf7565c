"""
Chain Activity Models.

============================================================
TABLES
============================================================
chain_transactions
    One row per (tx_hash, wallet_address, token). The unique
    constraint is the durable dedup guarantee.

wallet_chain_state
    One row per (wallet_address, chain) holding the latest native
    balance and the monotonic fetch checkpoint.

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chain_adapters.models import (
    CanonicalTransaction,
    Chain,
    Direction,
    TxCategory,
    TxStatus,
    WalletChainState,
)
from storage.models.base import Base, TimestampMixin, as_utc


class TransactionRecord(Base, TimestampMixin):
    """Persisted canonical transaction."""

    __tablename__ = "chain_transactions"
    __table_args__ = (
        UniqueConstraint("tx_hash", "wallet_address", "token", name="uq_chain_tx_dedup"),
        Index("ix_chain_tx_wallet_cursor", "chain", "wallet_address", "cursor"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    chain: Mapped[str] = mapped_column(String(16), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    token: Mapped[str] = mapped_column(String(128), nullable=False)

    category: Mapped[str] = mapped_column(String(16), nullable=False)
    method: Mapped[str] = mapped_column(String(64), nullable=False, default="transfer")
    block: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    cursor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    from_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    to_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    direction: Mapped[str] = mapped_column(String(8), nullable=False)

    # Exact decimal strings
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    amount_quote: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    fee: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False)

    @classmethod
    def from_canonical(cls, tx: CanonicalTransaction) -> "TransactionRecord":
        return cls(**cls.values_from_canonical(tx))

    @staticmethod
    def values_from_canonical(tx: CanonicalTransaction) -> dict:
        return {
            "chain": tx.chain.value,
            "wallet_address": tx.wallet_address,
            "tx_hash": tx.tx_hash,
            "token": tx.token,
            "category": tx.category.value,
            "method": tx.method,
            "block": tx.block,
            "timestamp": tx.timestamp,
            "cursor": tx.cursor,
            "from_address": tx.from_address,
            "to_address": tx.to_address,
            "direction": tx.direction.value,
            "amount": tx.amount,
            "amount_quote": tx.amount_quote,
            "fee": tx.fee,
            "status": tx.status.value,
        }

    def to_canonical(self) -> CanonicalTransaction:
        return CanonicalTransaction(
            chain=Chain(self.chain),
            wallet_address=self.wallet_address,
            tx_hash=self.tx_hash,
            token=self.token,
            category=TxCategory(self.category),
            method=self.method,
            block=self.block,
            timestamp=as_utc(self.timestamp),
            from_address=self.from_address,
            to_address=self.to_address,
            direction=Direction(self.direction),
            amount=self.amount,
            amount_quote=self.amount_quote,
            fee=self.fee,
            status=TxStatus(self.status),
            cursor=self.cursor,
        )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord({self.chain} {self.tx_hash[:10]} "
            f"{self.wallet_address[:10]} {self.token})>"
        )


class WalletChainStateRecord(Base, TimestampMixin):
    """Persisted per-(wallet, chain) balance and checkpoint."""

    __tablename__ = "wallet_chain_state"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    chain: Mapped[str] = mapped_column(String(16), primary_key=True)

    balance: Mapped[str] = mapped_column(String(80), nullable=False, default="0")
    value_in_quote: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    checkpoint: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    def to_state(self) -> WalletChainState:
        return WalletChainState(
            wallet_address=self.wallet_address,
            chain=Chain(self.chain),
            balance=self.balance,
            value_in_quote=self.value_in_quote,
            last_fetched_at=as_utc(self.last_fetched_at),
            checkpoint=self.checkpoint,
        )

    def __repr__(self) -> str:
        return (
            f"<WalletChainStateRecord({self.chain} {self.wallet_address[:10]} "
            f"checkpoint={self.checkpoint})>"
        )
