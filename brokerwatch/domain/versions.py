"""Dotted-numeric version handling for broker definitions and app versions.

Versions compare component by component as integers, so "1.10" is newer than
"1.2". Missing trailing components count as zero ("1.0" equals "1.0.0").
"""

import re
from typing import Tuple

_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)*$")


class InvalidVersionError(ValueError):
    """Raised when a version string is not dotted-numeric."""

    pass


def parse_version(version: str) -> Tuple[int, ...]:
    """Parse ``"<major>.<minor>[.<patch>...]"`` into a tuple of integers.

    Args:
        version: Version string

    Returns:
        Tuple of integer components

    Raises:
        InvalidVersionError: If the string is empty or not dotted-numeric

    Example:
        >>> parse_version("1.10.2")
        (1, 10, 2)
    """
    if not isinstance(version, str) or not _VERSION_PATTERN.match(version.strip()):
        raise InvalidVersionError(f"Invalid version: {version!r}. Expected e.g. '1.2' or '1.2.3'")
    return tuple(int(part) for part in version.strip().split("."))


def compare_versions(left: str, right: str) -> int:
    """Compare two versions numerically.

    Returns:
        -1 if left < right, 0 if equal, 1 if left > right
    """
    a, b = parse_version(left), parse_version(right)
    width = max(len(a), len(b))
    a += (0,) * (width - len(a))
    b += (0,) * (width - len(b))
    return (a > b) - (a < b)


def is_newer(candidate: str, current: str) -> bool:
    """Return True when ``candidate`` is strictly greater than ``current``."""
    return compare_versions(candidate, current) > 0
