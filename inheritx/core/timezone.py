"""
Centralized timezone utilities for consistent timestamp handling.

All timestamps are stored as naive UTC datetimes. This module provides:
1. The single source of "now" for the engine (naive UTC)
2. Normalization of client-supplied datetimes to naive UTC
3. ISO formatting with a 'Z' suffix for API responses
"""

from datetime import datetime
from typing import Optional
import pytz

UTC = pytz.UTC


def now_utc() -> datetime:
    """Get current time in UTC (timezone-aware)."""
    return datetime.now(UTC)


def utcnow() -> datetime:
    """Get current time as a naive UTC datetime, the storage convention."""
    return now_utc().replace(tzinfo=None)


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Timezone-aware values are converted; naive values are assumed to be UTC already.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def format_datetime_for_api(dt: Optional[datetime]) -> Optional[str]:
    """
    Convert a datetime to a UTC ISO string for API responses.

    Returns format: "2026-01-06T20:43:50.245704Z"
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        utc_dt = dt.astimezone(UTC)
        return utc_dt.isoformat().replace('+00:00', 'Z')

    # Naive datetimes are stored as UTC
    return dt.isoformat() + 'Z'
