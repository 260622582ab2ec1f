"""
UTC time helpers.

SQLite hands timezone-aware columns back as naive datetimes; everything is
stored in UTC, so naive values read from the database are tagged as UTC
before they are compared with `utcnow()`.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    # Integer arithmetic; float timestamps lose the last millisecond
    return (as_utc(value) - EPOCH) // _MILLISECOND


def from_epoch_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)
