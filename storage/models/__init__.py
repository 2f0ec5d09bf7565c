"""
Storage Models Package.

ORM models for chain activity persistence.

- base.py: Base, TimestampMixin
- activity.py: TransactionRecord, WalletChainStateRecord
"""

from storage.models.activity import TransactionRecord, WalletChainStateRecord
from storage.models.base import Base, TimestampMixin, as_utc


__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "TransactionRecord",
    "WalletChainStateRecord",
]
