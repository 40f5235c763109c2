"""Utility functions for hashing and time handling."""

from .hashing import compute_profile_fingerprint, compute_query_key, hash_string
from .timestamps import (
    earliest,
    ensure_utc,
    format_timestamp,
    from_epoch_millis,
    hours_from,
    parse_iso_datetime,
    utc_now,
)

__all__ = [
    # Hashing
    "compute_profile_fingerprint",
    "compute_query_key",
    "hash_string",
    # Timestamps
    "utc_now",
    "ensure_utc",
    "parse_iso_datetime",
    "format_timestamp",
    "from_epoch_millis",
    "hours_from",
    "earliest",
]
