"""Persistence layer exceptions.

All vault exceptions inherit from PersistenceError, so callers that only need
to know "the store failed" can catch a single type.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection or initialization fails.

    Examples:
    - Invalid or empty database URL
    - Database file not accessible
    - Session requested before init_database()
    """

    pass


class RecordNotFoundError(PersistenceError):
    """Raised when an update targets a row that does not exist.

    Lookups that may legitimately miss return None instead.
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised when a constraint is violated.

    Examples:
    - A second scan operation for the same (broker, profile query)
    - A second opt-out operation for the same extracted profile
    - An opt-out referencing an extracted profile that does not exist
    """

    pass
