"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The repository layer is the only code that issues SQL.
Sessions are injected; callers own the transaction boundary.

============================================================
REPOSITORIES
============================================================
- TransactionRepository: chain_transactions (append-only)
- WalletStateRepository: wallet_chain_state (monotonic upsert)

============================================================
"""

from storage.repositories.activity import TransactionRepository, WalletStateRepository
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    ConnectionError,
    DuplicateRecordError,
    QueryError,
    RepositoryException,
)


__all__ = [
    "BaseRepository",
    "TransactionRepository",
    "WalletStateRepository",
    "RepositoryException",
    "DuplicateRecordError",
    "ConnectionError",
    "QueryError",
]
