"""Hashing utilities for match fingerprints and profile-query keys.

This module provides deterministic hashing functions for:
- profile fingerprint: recognises the same listing across repeated scans
- query key: recognises the same name/address permutation across profile saves
"""

import hashlib
import re
from typing import Iterable, Optional


def compute_profile_fingerprint(
    broker_url: str,
    identifier: Optional[str] = None,
    profile_url: Optional[str] = None,
    name: Optional[str] = None,
    extra: Iterable[str] = (),
) -> str:
    """Compute a stable fingerprint for a listing found on a broker site.

    The most specific available key wins: a site-provided identifier, then the
    listing URL, then the normalized name combined with any extra fields
    (addresses, relatives).

    Args:
        broker_url: URL of the broker the listing was found on
        identifier: Site-specific listing identifier, if extracted
        profile_url: Listing URL, if extracted
        name: Listed name
        extra: Additional descriptive fields used only when nothing better exists

    Returns:
        Hexadecimal string representation of SHA256 hash (64 characters)

    Raises:
        ValueError: If no identifying field is available
    """
    if identifier and identifier.strip():
        key = f"id:{identifier.strip()}"
    elif profile_url and profile_url.strip():
        key = f"url:{profile_url.strip()}"
    elif name and name.strip():
        parts = [_normalize_text(name)] + sorted(_normalize_text(e) for e in extra if e)
        key = "name:" + "|".join(parts)
    else:
        raise ValueError("Extracted profile has no identifier, profile URL or name")

    composite_key = f"{broker_url.lower().strip()}:{key}"
    return hash_string(composite_key)


def compute_query_key(
    first_name: str,
    last_name: str,
    middle_name: Optional[str],
    city: str,
    state: str,
    birth_year: int,
) -> str:
    """Compute a key identifying one profile-query permutation.

    Returns:
        Hexadecimal string representation of SHA256 hash (64 characters)
    """
    composite = ":".join(
        [
            _normalize_text(first_name),
            _normalize_text(middle_name or ""),
            _normalize_text(last_name),
            _normalize_text(city),
            _normalize_text(state),
            str(birth_year),
        ]
    )
    return hash_string(composite)


def _normalize_text(text: str) -> str:
    """Lowercase, strip, and collapse internal whitespace."""
    return re.sub(r"\s+", " ", text.lower().strip())


def hash_string(value: str) -> str:
    """Compute SHA256 hash of a string value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
