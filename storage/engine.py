"""
Storage Engine - SQLAlchemy engine and session management.

============================================================
PURPOSE
============================================================
Builds the SQLAlchemy engine and session factory backing
SqlActivityStore, and creates the chain activity tables.

Requirements:
- SQLAlchemy 2.0 ORM (PostgreSQL in production, SQLite locally)
- Explicit transaction boundaries
- Hard failures on persistence errors

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storage.models import Base


# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///chain_activity.db"


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


# =============================================================
# DATABASE ENGINE
# =============================================================


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Store runs synchronous sessions
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    Pool sizing only applies to server databases. SQLite connections
    may be used from worker threads; an in-memory database shares one
    connection so every thread sees the same tables.

    Args:
        database_url: Overrides DATABASE_URL
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements
    """
    url = database_url or get_database_url()
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        sqlite_args = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            sqlite_args["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, future=True, **sqlite_args)
    else:
        engine = create_engine(
            url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
            future=True,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with explicit commits."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs. Rolls back on any exception.
    Raw SQLAlchemy errors (typically from commit) surface as
    DatabasePersistenceError; repository exceptions pass through.

    Usage:
        with transaction_scope(factory) as session:
            repo = TransactionRepository(session)
            repo.insert_ignore_conflict(record)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    except Exception as e:
        logger.debug(f"Transaction rolled back: {e}")
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================


def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError if connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e


def initialize_database(engine: Engine) -> None:
    """
    Full database initialization sequence.

    1. Verify connection
    2. Create tables if not exist

    Raises:
        DatabaseInitializationError if table creation fails
    """
    verify_database_connection(engine)

    try:
        logger.info("Creating chain activity tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Chain activity tables ready")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}") from e


__all__ = [
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "verify_database_connection",
    "initialize_database",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
