from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any

from dateutil.relativedelta import relativedelta

from src.core.dates import clamp_day, local_midnight, start_of_week, sunday_weekday, to_local
from src.core.errors import InvalidRuleError

# Period-boundary mode has no anchor to borrow from.
_BOUNDARY_DEFAULT_DOW = 1
_BOUNDARY_DEFAULT_DOM = 1
_BOUNDARY_DEFAULT_MONTH = 1


class Frequency(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @classmethod
    def from_db(cls, raw: str | None) -> Frequency:
        if not raw:
            return cls.NONE
        try:
            return cls(str(raw).strip().upper())
        except ValueError as exc:
            raise InvalidRuleError(f"unknown frequency: {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    """
    Declarative description of how a task repeats.

    - every == 0 selects period-boundary mode: fire at the start of each period.
    - day_of_week uses Sunday = 0.
    - Anchor fields left as None keep the cursor's own calendar position.
    """

    frequency: Frequency = Frequency.NONE
    every: int = 1
    day_of_week: int | None = None
    day_of_month: int | None = None
    month: int | None = None
    series_end: datetime | None = None

    @property
    def is_recurring(self) -> bool:
        return self.frequency != Frequency.NONE

    @property
    def is_period_boundary(self) -> bool:
        return self.every == 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "frequency": getattr(self.frequency, "value", self.frequency),
            "every": self.every,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "month": self.month,
            "series_end": self.series_end.isoformat() if self.series_end else None,
        }


def _check_range(name: str, value: int | None, low: int, high: int) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRuleError(f"{name} must be an integer, got {value!r}")
    if value < low or value > high:
        raise InvalidRuleError(f"{name} must be in [{low}..{high}], got {value}")


def validate_rule(rule: RecurrenceRule) -> None:
    if not isinstance(rule.frequency, Frequency):
        raise InvalidRuleError(f"unknown frequency: {rule.frequency!r}")
    if isinstance(rule.every, bool) or not isinstance(rule.every, int) or rule.every < 0:
        raise InvalidRuleError(f"every must be a non-negative integer, got {rule.every!r}")
    _check_range("day_of_week", rule.day_of_week, 0, 6)
    _check_range("day_of_month", rule.day_of_month, 1, 31)
    _check_range("month", rule.month, 1, 12)
    if rule.series_end is not None and rule.series_end.tzinfo is None:
        raise InvalidRuleError("series_end must be timezone-aware")


def next_after(
    anchor: datetime,
    rule: RecurrenceRule,
    now: datetime,
    tz: tzinfo | None = None,
    *,
    wall_time: time | None = None,
) -> datetime:
    """
    Next occurrence after ``anchor`` for ``rule``.

    Standard mode (every >= 1) adds ``every`` periods to the anchor in the wall
    clock of ``tz`` and snaps onto the rule's day-of-week / day-of-month / month,
    clamping to the end of short months. ``wall_time`` pins the local time of day of
    the result, so a step that lands in a DST gap does not shift later ones.
    The result is strictly after ``anchor``.

    Period-boundary mode (every == 0) ignores the anchor and returns the start of
    the next period after ``now``.
    """
    validate_rule(rule)
    if not rule.is_recurring:
        raise InvalidRuleError("frequency NONE has no occurrences")

    zone = tz or timezone.utc
    if rule.is_period_boundary:
        return _next_period_start(rule, to_local(now, zone))
    result = _advance(rule, to_local(anchor, zone))
    if wall_time is not None:
        result = result.replace(
            hour=wall_time.hour,
            minute=wall_time.minute,
            second=wall_time.second,
            microsecond=wall_time.microsecond,
            fold=0,
        )
    return result


def _advance(rule: RecurrenceRule, local: datetime) -> datetime:
    step = rule.every
    freq = rule.frequency

    if freq == Frequency.DAILY:
        return local + timedelta(days=step)

    if freq == Frequency.WEEKLY:
        shifted = local + timedelta(weeks=step)
        if rule.day_of_week is None:
            return shifted
        return start_of_week(shifted) + timedelta(days=rule.day_of_week)

    if freq == Frequency.MONTHLY:
        shifted = local + relativedelta(months=step)
        day = rule.day_of_month or local.day
        return shifted.replace(day=clamp_day(shifted.year, shifted.month, day))

    if freq == Frequency.YEARLY:
        shifted = local + relativedelta(years=step)
        month = rule.month or local.month
        day = rule.day_of_month or local.day
        return shifted.replace(month=month, day=clamp_day(shifted.year, month, day))

    raise InvalidRuleError(f"unsupported frequency: {freq!r}")


def _next_period_start(rule: RecurrenceRule, local_now: datetime) -> datetime:
    today = local_now.date()
    zone = local_now.tzinfo
    freq = rule.frequency

    if freq == Frequency.DAILY:
        return local_midnight(today + timedelta(days=1), zone)

    if freq == Frequency.WEEKLY:
        wanted = _BOUNDARY_DEFAULT_DOW if rule.day_of_week is None else rule.day_of_week
        ahead = (wanted - sunday_weekday(today)) % 7 or 7
        return local_midnight(today + timedelta(days=ahead), zone)

    if freq == Frequency.MONTHLY:
        first = date(today.year + 1, 1, 1) if today.month == 12 else date(today.year, today.month + 1, 1)
        return local_midnight(first, zone)

    if freq == Frequency.YEARLY:
        year = today.year + 1
        month = rule.month or _BOUNDARY_DEFAULT_MONTH
        day = clamp_day(year, month, rule.day_of_month or _BOUNDARY_DEFAULT_DOM)
        return local_midnight(date(year, month, day), zone)

    raise InvalidRuleError(f"unsupported frequency: {freq!r}")


def ensure_within_series(rule: RecurrenceRule, occurrence: datetime | None) -> None:
    """A series cannot start (or restart) past its own end."""
    if occurrence is None or rule.series_end is None:
        return
    if occurrence > rule.series_end:
        raise InvalidRuleError(
            f"series_end {rule.series_end.isoformat()} is before the first occurrence {occurrence.isoformat()}"
        )


def first_occurrence(
    rule: RecurrenceRule,
    anchor: datetime | None,
    now: datetime,
    tz: tzinfo | None = None,
) -> datetime | None:
    """Initial next_occurrence for a freshly saved or edited rule."""
    validate_rule(rule)
    if not rule.is_recurring:
        return None
    if rule.is_period_boundary:
        first = next_after(now, rule, now, tz)
    else:
        first = anchor if anchor is not None else now
    ensure_within_series(rule, first)
    return first
