"""Duration parsing for interval settings.

Accepts short human forms (``"15m"``, ``"1h30m"``, ``"2d"``) and ISO-8601
durations (``"PT15M"``, ``"P1DT6H"``).
"""

import re

_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_HUMAN_PART = re.compile(r"(\d+)([smhd])")
_ISO_PATTERN = re.compile(
    r"^P(?:(?P<d>\d+)D)?(?:T(?:(?P<h>\d+)H)?(?:(?P<m>\d+)M)?(?:(?P<s>\d+(?:\.\d+)?)S)?)?$"
)


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed or is out of range."""

    pass


def parse_duration(duration_str: str) -> int:
    """Parse a duration string to whole seconds.

    Args:
        duration_str: Duration such as ``"15m"`` or ``"PT15M"``

    Returns:
        Duration in seconds

    Raises:
        DurationParseError: If the string is empty, malformed or zero

    Examples:
        >>> parse_duration("1h30m")
        5400
        >>> parse_duration("PT15M")
        900
    """
    text = (duration_str or "").strip()
    if not text:
        raise DurationParseError("Duration string cannot be empty")

    if text.upper().startswith("P"):
        total = _parse_iso(text.upper())
    else:
        total = _parse_human(text.lower())

    if total == 0:
        raise DurationParseError(f"Duration cannot be zero: '{duration_str}'")
    return total


def _parse_iso(text: str) -> int:
    match = _ISO_PATTERN.match(text)
    if not match or text in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{text}'. "
            "Expected format like 'P2D', 'PT1H30M', 'PT15M', or 'PT30S'"
        )
    parts = match.groupdict()
    return (
        int(parts["d"] or 0) * _UNIT_SECONDS["d"]
        + int(parts["h"] or 0) * _UNIT_SECONDS["h"]
        + int(parts["m"] or 0) * _UNIT_SECONDS["m"]
        + int(float(parts["s"] or 0))
    )


def _parse_human(text: str) -> int:
    compact = re.sub(r"\s+", "", text)
    parts = _HUMAN_PART.findall(compact)
    if not parts or "".join(n + u for n, u in parts) != compact:
        raise DurationParseError(
            f"Invalid duration format: '{text}'. "
            "Use digits with units s, m, h, d, e.g. '15m', '1h' or '1h30m'"
        )
    return sum(int(number) * _UNIT_SECONDS[unit] for number, unit in parts)


def validate_duration_range(
    duration_seconds: int,
    min_seconds: int = 300,
    max_seconds: int = 86400,
    label: str = "Scan interval",
) -> None:
    """Check that a duration lies within ``[min_seconds, max_seconds]``.

    Raises:
        DurationParseError: If the duration is outside the range
    """
    if duration_seconds < min_seconds:
        raise DurationParseError(
            f"{label} too short: {humanize_seconds(duration_seconds)}. "
            f"Minimum is {humanize_seconds(min_seconds)}."
        )
    if duration_seconds > max_seconds:
        raise DurationParseError(
            f"{label} too long: {humanize_seconds(duration_seconds)}. "
            f"Maximum is {humanize_seconds(max_seconds)}."
        )


def humanize_seconds(seconds: int) -> str:
    """Render seconds in the largest whole unit, e.g. ``"2 hours"``."""
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
