"""Structured logging for the broker protection engine."""

import logging
from typing import Optional, Union


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges a default component into every record's extra."""

    def process(self, msg, kwargs):
        """Merge adapter extra with the call's extra; the call's values win."""
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(
    name: str, component: Optional[str] = None
) -> Union[logging.Logger, ComponentLoggerAdapter]:
    """Get a logger with optional default component field.

    Args:
        name: Logger name (typically __name__)
        component: Optional component identifier injected into all records

    Returns:
        Logger or ComponentLoggerAdapter instance

    Example:
        >>> logger = get_logger(__name__, component="engine")
        >>> logger.info("Job started", extra={"event": "job.started"})
    """
    logger = logging.getLogger(name)

    if component:
        return ComponentLoggerAdapter(logger, {"component": component})

    return logger
