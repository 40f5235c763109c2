"""Context propagation for structured logging.

Fields pushed here (run_id, broker_id, profile_query_id, job_kind, ...) are
merged into every log record emitted inside the scope. Context lives in a
ContextVar, so each worker thread sees only its own job's fields.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional


LogContextVar: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the current logging context."""
    return LogContextVar.get().copy()


def push_log_context(**kwargs) -> Token:
    """Merge new fields into the logging context.

    Args:
        **kwargs: Key-value pairs to add to the logging context

    Returns:
        Token that restores the previous context when passed to pop_log_context()

    Example:
        >>> token = push_log_context(run_id="abc123", broker_id=4)
        >>> pop_log_context(token)
    """
    current = LogContextVar.get()
    return LogContextVar.set({**current, **kwargs})


def pop_log_context(token: Token) -> None:
    """Restore the logging context to the state captured by ``token``."""
    LogContextVar.reset(token)


def clear_log_context() -> None:
    """Clear all logging context fields (used by tests)."""
    LogContextVar.set({})


class log_context:
    """Context manager for scoped logging context.

    Example:
        >>> with log_context(run_id="abc123", broker_id=4, job_kind="scan"):
        ...     logger.info("Dispatching job")
    """

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = push_log_context(**self.kwargs)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            pop_log_context(self.token)
        return False
