"""Persistence layer (the vault) backed by SQLite through SQLAlchemy.

Public API:
    # Database initialization and session management
    - init_database(database_url: str) -> None
    - get_session() -> ContextManager[Session]
    - close_database() -> None
    - get_engine() -> Engine

    # Store API
    - DataBrokerVault: brokers, profile queries, operations, listings, events, settings

    # Exceptions
    - PersistenceError: Base exception for all persistence errors
    - DatabaseConnectionError: Database connection/initialization failures
    - RecordNotFoundError: Required record not found
    - DataIntegrityError: Constraint violations

Example usage:
    >>> from brokerwatch.persistence import init_database, get_session, DataBrokerVault
    >>>
    >>> init_database("sqlite:///./data/brokerwatch.db")
    >>>
    >>> with get_session() as session:
    ...     vault = DataBrokerVault(session)
    ...     broker = vault.fetch_broker("example.com")
"""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .vault import (
    ALL_PROFILES_REMOVED_FLAG,
    FIRST_MATCH_FOUND_FLAG,
    FIRST_PROFILE_REMOVED_FLAG,
    LAST_CHECKED_APP_VERSION,
    DataBrokerVault,
)

__all__ = [
    # Database functions
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    # Store
    "DataBrokerVault",
    "LAST_CHECKED_APP_VERSION",
    "FIRST_MATCH_FOUND_FLAG",
    "FIRST_PROFILE_REMOVED_FLAG",
    "ALL_PROFILES_REMOVED_FLAG",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
