"""Database connection and session management for the vault.

This module owns the process-wide engine and session factory. Worker threads
each open their own session through get_session(); the engine's pool hands
every thread its own SQLite connection.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from brokerwatch.logging import get_logger

from .exceptions import DatabaseConnectionError

_engine: Engine | None = None
_session_factory: sessionmaker | None = None

logger = get_logger(__name__, component="database")


def init_database(database_url: str) -> None:
    """Initialize the database connection and create the schema if needed.

    Call once during startup. It:
    1. Creates the parent directory of a SQLite file database
    2. Creates the SQLAlchemy engine (StaticPool for in-memory databases so
       every thread sees the same data)
    3. Enables SQLite foreign keys and WAL journaling
    4. Validates the connection and creates missing tables

    Args:
        database_url: Database connection URL (e.g., "sqlite:///./data/brokerwatch.db")

    Raises:
        DatabaseConnectionError: If database initialization fails
    """
    global _engine, _session_factory

    try:
        if not database_url or not isinstance(database_url, str):
            raise DatabaseConnectionError("Database URL must be a non-empty string")

        logger.info(
            "Initializing database",
            extra={
                "event": "database.initializing",
                "database_url": _redact_url(database_url),
            },
        )

        is_sqlite = database_url.startswith("sqlite")
        in_memory = is_sqlite and (database_url.endswith(":memory:") or database_url == "sqlite://")

        if is_sqlite and not in_memory:
            db_file = Path(database_url.replace("sqlite:///", ""))
            if not db_file.parent.exists():
                logger.info(f"Creating database directory: {db_file.parent}")
                db_file.parent.mkdir(parents=True, exist_ok=True)

        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,
            "future": True,
        }
        if is_sqlite:
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,
            }
        if in_memory:
            engine_kwargs["poolclass"] = StaticPool

        if _engine is not None:
            _engine.dispose()

        _engine = create_engine(database_url, **engine_kwargs)

        if is_sqlite:
            _configure_sqlite(_engine, wal=not in_memory)

        _validate_connection(_engine)

        _session_factory = sessionmaker(
            bind=_engine,
            autocommit=False,
            autoflush=True,
            expire_on_commit=False,
            future=True,
        )

        from .schema import create_schema

        create_schema(_engine)

        logger.info(
            "Database initialized successfully",
            extra={
                "event": "database.initialised",
                "database_url": _redact_url(database_url),
            },
        )

    except DatabaseConnectionError:
        raise
    except Exception as e:
        error_msg = f"Failed to initialize database: {e}"
        logger.error(error_msg, exc_info=True)
        raise DatabaseConnectionError(error_msg) from e


def _configure_sqlite(engine: Engine, wal: bool) -> None:
    """Enable foreign keys (and WAL for file databases) on every new connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def _validate_connection(engine: Engine) -> None:
    """Run ``SELECT 1`` against the engine.

    Raises:
        DatabaseConnectionError: If the test query fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.debug("Database connection validated successfully")
    except Exception as e:
        raise DatabaseConnectionError(f"Failed to validate database connection: {e}") from e


def _redact_url(url: str) -> str:
    """Hide the password of a server database URL; SQLite URLs are returned as-is."""
    if url.startswith("sqlite"):
        return url

    if "@" in url and ":" in url:
        parts = url.split("@")
        if len(parts) == 2:
            prefix = parts[0].rsplit(":", 1)[0]
            return f"{prefix}:***@{parts[1]}"

    return url


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Provide a session that commits on success and rolls back on error.

    Everything done inside one ``with get_session()`` block is a single
    transaction, which is how a job's outcome is written atomically.

    Yields:
        Session: SQLAlchemy session for database operations

    Raises:
        DatabaseConnectionError: If the database is not initialized
        Exception: Any exception from operations within the context

    Example:
        >>> with get_session() as session:
        ...     vault = DataBrokerVault(session)
        ...     broker = vault.fetch_broker("example.com")
    """
    if _session_factory is None:
        raise DatabaseConnectionError(
            "Database not initialized. Call init_database() before using get_session()"
        )

    session = _session_factory()
    try:
        yield session
        session.commit()
        logger.debug(
            "Database session committed",
            extra={"event": "database.session.committed"},
        )
    except Exception as e:
        session.rollback()
        logger.warning(
            f"Database session rolled back due to exception: {e}",
            extra={
                "event": "database.session.rolled_back",
                "error_type": type(e).__name__,
            },
        )
        raise
    finally:
        session.close()


def get_engine() -> Engine:
    """Return the database engine.

    Raises:
        DatabaseConnectionError: If database not initialized
    """
    if _engine is None:
        raise DatabaseConnectionError(
            "Database not initialized. Call init_database() before using get_engine()"
        )

    return _engine


def close_database() -> None:
    """Dispose of the engine; called during shutdown and by tests."""
    global _engine, _session_factory

    if _engine is not None:
        logger.info("Closing database connections")
        _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")
