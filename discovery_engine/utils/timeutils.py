"""UTC helpers.

The database stores naive UTC datetimes; scheduling code works with aware ones.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Convert to the naive UTC form stored in the database."""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)
