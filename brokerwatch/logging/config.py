"""Logging configuration for the broker protection engine."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Literal, Tuple

from .context import get_log_context

LogFormat = Literal["json", "key-value"]

SERVICE_NAME = "brokerwatch"

# Record attributes produced by the logging module itself.
STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "asctime",
    "exc_info", "exc_text", "stack_info", "taskName",
})

# Personal data that may reach a record through extra or context fields.
SENSITIVE_FIELDS = frozenset({
    "first_name", "middle_name", "last_name", "full_name",
    "email", "email_address", "city", "state", "birth_year", "addresses",
    "phone", "profile_url",
})

REDACTED = "***"


class ContextualFilter(logging.Filter):
    """Enrich records with static metadata and the active log context.

    Personal-data fields are masked so that scans never leak the profile being
    searched for into the log stream.
    """

    def __init__(self, service: str = SERVICE_NAME, environment: str = "local"):
        """Initialize contextual filter.

        Args:
            service: Service name (static field)
            environment: Environment label (production, staging, local)
        """
        super().__init__()
        self.service = service
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.environment = self.environment

        for key, value in get_log_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)

        for key in SENSITIVE_FIELDS:
            if key in record.__dict__ and record.__dict__[key] is not None:
                setattr(record, key, REDACTED)

        return True


def _iter_extras(record: logging.LogRecord, skip: frozenset) -> Iterator[Tuple[str, Any]]:
    """Yield the non-standard attributes of a record in a stable order."""
    for key, value in sorted(record.__dict__.items()):
        if key in skip or key.startswith("_"):
            continue
        yield key, value


class JSONFormatter(logging.Formatter):
    """Single-line JSON formatter with stable field names."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in _iter_extras(record, STANDARD_ATTRS):
            if isinstance(value, datetime):
                log_obj[key] = value.isoformat()
            elif isinstance(value, (str, int, float, bool, type(None), list, dict)):
                log_obj[key] = value
            else:
                log_obj[key] = str(value)

        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, ensure_ascii=False, default=str)

    def _format_timestamp(self, created: float) -> str:
        """Format a record timestamp as ISO-8601 UTC with millisecond precision."""
        dt = datetime.fromtimestamp(created, tz=timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class KeyValueFormatter(logging.Formatter):
    """Human-readable formatter.

    Produces ``timestamp [level] logger: message key1=value1 key2=value2``.
    """

    SKIP_ATTRS = STANDARD_ATTRS | {"service", "environment"}

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        extras = []
        for key, value in _iter_extras(record, self.SKIP_ATTRS):
            if isinstance(value, str):
                value_str = f'"{value}"' if any(c in value for c in ' =,') else value
            elif isinstance(value, datetime):
                value_str = value.isoformat()
            elif isinstance(value, bool):
                value_str = str(value).lower()
            elif value is None:
                value_str = "null"
            else:
                value_str = str(value)
            extras.append(f"{key}={value_str}")

        return f"{base} {' '.join(extras)}" if extras else base


def configure_logging(
    level: str = "INFO",
    format_type: LogFormat = "key-value",
    environment: str = "local",
) -> None:
    """Configure the root logger with the specified level and format.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: 'json' for JSON logs or 'key-value' for human-readable
        environment: Environment label (production, staging, local)

    Raises:
        ValueError: If level or format_type is invalid
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    if format_type not in ("json", "key-value"):
        raise ValueError(f"Invalid log format: {format_type}. Must be 'json' or 'key-value'")

    handler = logging.StreamHandler(sys.stdout)
    if format_type == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            KeyValueFormatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    handler.addFilter(ContextualFilter(service=SERVICE_NAME, environment=environment))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "event": "logging.configured",
            "component": "logging",
            "log_level": level.upper(),
            "log_format": format_type,
        },
    )
