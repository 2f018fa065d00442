"""
Timezone utilities.

All timestamps are stored as naive UTC datetimes, matching the
`DateTime` columns and `func.now()` server defaults.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Get the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_iso(dt: Optional[datetime]) -> Optional[str]:
    """
    Format a datetime as an ISO 8601 string in UTC.

    Args:
        dt: A datetime object (naive assumed UTC, or timezone-aware)

    Returns:
        ISO 8601 string with a "Z" suffix, or None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt.isoformat() + "Z"


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    """Whole seconds from start to end, or None if either is missing."""
    if start is None or end is None:
        return None
    return int((end - start).total_seconds())
