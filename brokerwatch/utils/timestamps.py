"""Timestamp utilities for UTC handling and run-date arithmetic.

This module provides utilities for working with timestamps in UTC:
- Getting current UTC time
- Converting timezone-naive to timezone-aware UTC
- Parsing ISO 8601 datetime strings and broker epoch-millisecond stamps
- Offsetting run dates by a number of hours
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC time with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    If the datetime is timezone-naive, it's treated as UTC.
    If the datetime has a different timezone, it's converted to UTC.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None

    Example:
        >>> from datetime import datetime, timezone
        >>> naive = datetime(2025, 11, 4, 12, 0, 0)
        >>> ensure_utc(naive).tzinfo == timezone.utc
        True
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def parse_iso_datetime(iso_string: str) -> Optional[datetime]:
    """Parse an ISO 8601 datetime string to UTC datetime.

    Supports ``2025-11-04T12:00:00Z``, ``2025-11-04T12:00:00+00:00``,
    ``2025-11-04T12:00:00`` and ``2025-11-04``.

    Args:
        iso_string: ISO 8601 formatted datetime string

    Returns:
        Timezone-aware datetime in UTC, or None if parsing fails
    """
    if not iso_string or not iso_string.strip():
        return None

    cleaned = iso_string.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        try:
            return ensure_utc(datetime.strptime(iso_string.strip(), "%Y-%m-%d"))
        except ValueError:
            return None


def format_timestamp(dt: datetime, include_microseconds: bool = False) -> str:
    """Format a datetime as ISO 8601 string in UTC.

    Args:
        dt: Datetime to format
        include_microseconds: Whether to include microseconds in output

    Returns:
        ISO 8601 formatted string with 'Z' suffix
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return ""

    if include_microseconds:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def from_epoch_millis(millis: Optional[int]) -> Optional[datetime]:
    """Convert a millisecond Unix timestamp (as used in broker files) to UTC.

    Args:
        millis: Milliseconds since epoch, or None

    Returns:
        Timezone-aware datetime in UTC, or None
    """
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def hours_from(start: datetime, hours: float) -> datetime:
    """Return ``start`` shifted by a (possibly fractional) number of hours."""
    return ensure_utc(start) + timedelta(hours=hours)


def earliest(*candidates: Optional[datetime]) -> Optional[datetime]:
    """Return the earliest non-None datetime, or None when all are None."""
    present = [ensure_utc(c) for c in candidates if c is not None]
    return min(present) if present else None
