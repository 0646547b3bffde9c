"""Clock helpers; all persisted timestamps are naive UTC."""
from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalise aware datetimes to naive UTC, leaving naive ones untouched."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: int | float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def quota_day(now: datetime, tz_name: str) -> date:
    """Calendar day of ``now`` in the reference quota time zone."""
    aware = now if now.tzinfo is not None else now.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).date()


__all__ = ["utcnow", "as_naive_utc", "from_timestamp", "quota_day"]
