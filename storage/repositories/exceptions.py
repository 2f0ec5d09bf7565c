"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Repositories catch SQLAlchemy errors and re-raise them as these
types with context. SqlActivityStore translates them into
StorageError or per-record conflict outcomes.

============================================================
"""

from typing import Any, Optional


class RepositoryException(Exception):
    """Base exception for all repository operations."""

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None
    ) -> None:
        self.message = message
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(f"[{repository_name}] {operation}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "repository": self.repository_name,
            "operation": self.operation,
            "message": self.message,
            "details": self.details,
        }


class DuplicateRecordError(RepositoryException):
    """A unique constraint rejected the insert (dedup key already stored)."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        key: Any,
    ) -> None:
        super().__init__(
            message=f"Duplicate record: {key} already exists",
            repository_name=repository_name,
            operation=operation,
            details={"key": str(key)}
        )
        self.key = key


class ConnectionError(RepositoryException):
    """Database connection failed (timeouts, pool exhaustion, server down)."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Database connection failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )


class QueryError(RepositoryException):
    """Statement execution failed."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Query failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )
