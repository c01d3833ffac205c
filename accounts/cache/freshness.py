"""Freshness policy for cached records."""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class TimestampedRecord(Protocol):
    updated_at: datetime


def record_age(record: TimestampedRecord, now: Optional[datetime] = None) -> timedelta:
    """Time elapsed since the record was last written.

    Naive timestamps (SQLite drops tzinfo) are read as UTC.
    """
    now = now or datetime.now(timezone.utc)
    updated_at = record.updated_at
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return now - updated_at


def is_stale(
    record: Optional[TimestampedRecord],
    ttl_ms: int,
    now: Optional[datetime] = None,
) -> bool:
    """True when the record is missing or older than ``ttl_ms``.

    An age of exactly ``ttl_ms`` is still fresh.
    """
    if record is None:
        return True
    return record_age(record, now) > timedelta(milliseconds=ttl_ms)
