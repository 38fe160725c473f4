"""
Wall clock for job records and API timestamps

Job timestamps are aware UTC datetimes; anything that leaves the process
is rendered as ISO 8601 with a Z suffix.
"""

from datetime import datetime, timezone
from typing import Optional

ISO_Z_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def iso_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Render a datetime as ISO 8601 UTC with a Z suffix

    Naive datetimes are taken to already be UTC.

    Example:
        >>> iso_z(datetime(2026, 1, 31, 12, 34, 56, 789012, tzinfo=timezone.utc))
        '2026-01-31T12:34:56.789012Z'
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_Z_FORMAT)


def utc_now_iso() -> str:
    """Current time, ISO 8601 with Z suffix (error envelope timestamps)"""
    return iso_z(utc_now())


def elapsed_ms(start: datetime, end: Optional[datetime] = None) -> int:
    """Whole milliseconds from start to end (default: now)"""
    end = end or utc_now()
    return int((end - start).total_seconds() * 1000)
