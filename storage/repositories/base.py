"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Common functionality for the chain activity repositories:
- Session injection
- SQLAlchemy error wrapping
- Query helpers
- Logging setup

============================================================
USAGE
============================================================
Repositories never open or commit transactions themselves;
the caller owns the session and its transaction boundary.

============================================================
"""

import logging
from abc import ABC
from typing import Any, Generic, List, NoReturn, Optional, Type, TypeVar

from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    ConnectionError,
    DuplicateRecordError,
    QueryError,
)


# Type variable for ORM model
T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base class for all repositories.

    Usage:
        class MyRepository(BaseRepository[MyModel]):
            def __init__(self, session: Session):
                super().__init__(session, MyModel, "MyRepository")
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def repository_name(self) -> str:
        return self._repository_name

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[dict] = None
    ) -> NoReturn:
        """
        Wrap a database error in a repository exception.

        Raises:
            RepositoryException: Always
        """
        context = context or {}

        if isinstance(error, SQLAlchemyIntegrityError):
            error_str = str(error).lower()
            if "duplicate" in error_str or "unique" in error_str:
                self._logger.debug(f"Duplicate key in {operation}: {context}")
                raise DuplicateRecordError(
                    repository_name=self._repository_name,
                    operation=operation,
                    key=context.get("key", "unknown"),
                ) from error

        self._logger.error(
            f"Database error in {operation}: {error}",
            extra={"context": context},
            exc_info=True
        )

        if isinstance(error, OperationalError):
            raise ConnectionError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=str(error)
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            original_error=str(error)
        ) from error

    def _execute_query(self, stmt: Any, operation: str = "query") -> List[T]:
        """Execute a select statement and return entities."""
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
