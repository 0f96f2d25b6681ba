"""
Catch-up (roll-forward) of a single recurring task.

Pure: takes an explicit rule + state pair and returns the new state. The caller
persists the result as one update, so a task is never seen half-rolled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum

from src.core.dates import to_local
from src.core.errors import NonAdvancingOccurrenceError
from src.core.recurrence import RecurrenceRule, next_after


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DONE = "DONE"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return cls.PENDING


@dataclass(slots=True)
class RecurringTaskState:
    anchor: datetime | None
    last_occurrence: datetime | None
    next_occurrence: datetime | None
    status: TaskStatus
    previous_status: TaskStatus | None = None
    is_done: bool = False


@dataclass(frozen=True, slots=True)
class RecurrenceUpdate:
    last_occurrence: datetime | None
    next_occurrence: datetime | None
    status: TaskStatus
    is_done: bool
    terminated: bool = False
    periods: int = 0


def restored_status(state: RecurringTaskState) -> TaskStatus:
    """Status a task goes back to once a new occurrence is scheduled."""
    if state.status != TaskStatus.DONE:
        return state.status
    previous = state.previous_status
    if previous is None or previous == TaskStatus.DONE:
        return TaskStatus.ACTIVE
    return previous


def roll_forward(
    rule: RecurrenceRule,
    state: RecurringTaskState,
    now: datetime,
    tz: tzinfo | None = None,
) -> RecurrenceUpdate | None:
    """
    Advance ``state`` through every period it missed up to ``now``.

    Returns None when there is nothing to do (not recurring, series already
    ended, or next_occurrence still in the future), which makes a repeated run
    with the same ``now`` a no-op.

    Raises NonAdvancingOccurrenceError if the evaluator ever fails to move the
    cursor forward; the task is left untouched in that case.
    """
    cursor = state.next_occurrence
    if not rule.is_recurring or cursor is None or cursor > now:
        return None

    zone = tz or timezone.utc
    wall_time = to_local(state.anchor, zone).time() if state.anchor is not None else None
    last = state.last_occurrence
    periods = 0
    while True:
        candidate = next_after(cursor, rule, now, zone, wall_time=wall_time)
        if candidate <= cursor:
            raise NonAdvancingOccurrenceError(cursor, candidate)
        periods += 1
        if rule.series_end is not None and candidate > rule.series_end:
            return RecurrenceUpdate(
                last_occurrence=cursor,
                next_occurrence=None,
                status=TaskStatus.DONE,
                is_done=True,
                terminated=True,
                periods=periods,
            )
        last = cursor
        cursor = candidate
        if cursor > now:
            break

    status = restored_status(state)
    return RecurrenceUpdate(
        last_occurrence=last,
        next_occurrence=cursor,
        status=status,
        is_done=status == TaskStatus.DONE,
        periods=periods,
    )
