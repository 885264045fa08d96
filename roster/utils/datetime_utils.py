"""Datetime utilities for timezone-aware operations."""

from datetime import datetime, timezone

# Period start used when a workspace has neither a boundary nor any activity.
EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime object is timezone-aware and in UTC.

    Naive values are assumed to be UTC already (SQLite hands them back
    without tzinfo).
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def ensure_utc_or_none(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return ensure_utc(dt)


def start_of_day(dt: datetime) -> datetime:
    """Midnight UTC of the day containing ``dt``."""
    dt = ensure_utc(dt)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)
