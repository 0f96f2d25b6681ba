from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from src.config import settings


def configured_tz() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive values; they are always stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, tz: tzinfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> int:
    """Reduce ``day`` to the last valid day of ``year``/``month`` (31 Apr -> 30, 29 Feb -> 28)."""
    return min(day, last_day_of_month(year, month))


def sunday_weekday(value: date) -> int:
    """Weekday with Sunday = 0 ... Saturday = 6."""
    return (value.weekday() + 1) % 7


def start_of_week(value: datetime) -> datetime:
    """Sunday of the week containing ``value``, keeping its time of day."""
    return value - timedelta(days=sunday_weekday(value))


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)
