"""
Time utilities for the TaskFlow backend.

This module provides a single source of truth for time operations,
ensuring consistency across milestone status derivation and time tracking.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to timezone-aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so naive values
    read back from the store are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_past(value: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """
    Check whether a deadline has already passed.

    Args:
        value: The deadline (naive values are treated as UTC)
        now: Optional reference time, defaults to utc_now()

    Returns:
        True if value is set and strictly earlier than now
    """
    if value is None:
        return False
    return (now or utc_now()) > as_utc(value)


def whole_minutes_between(start: datetime, end: datetime) -> int:
    """Elapsed whole minutes from start to end, never negative."""
    seconds = (as_utc(end) - as_utc(start)).total_seconds()
    return max(0, int(seconds // 60))
