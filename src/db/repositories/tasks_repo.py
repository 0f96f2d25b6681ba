import json
from datetime import datetime, timezone, tzinfo

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.dates import as_utc, configured_tz, to_local
from src.core.errors import PersistenceError
from src.core.recurrence import (
    Frequency,
    RecurrenceRule,
    ensure_within_series,
    first_occurrence,
    next_after,
    validate_rule,
)
from src.core.rollover import RecurrenceUpdate, RecurringTaskState, TaskStatus, restored_status
from src.db.models import Task, TaskEvent


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _json_default(value) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _log_event(session: Session, task_id: str, event_type: str, meta: dict | str | None = None) -> None:
    if isinstance(meta, dict):
        meta_json = json.dumps(meta, ensure_ascii=False, default=_json_default)
    elif meta is None:
        meta_json = None
    else:
        meta_json = str(meta)

    session.add(
        TaskEvent(
            task_id=task_id,
            event_type=event_type,
            ts=_utc_now(),
            meta_json=meta_json,
        )
    )


def rule_of(task: Task) -> RecurrenceRule:
    every = task.recurrence_every
    return RecurrenceRule(
        frequency=Frequency.from_db(task.recurrence),
        every=1 if every is None else int(every),
        day_of_week=task.recurrence_dow,
        day_of_month=task.recurrence_dom,
        month=task.recurrence_month,
        series_end=as_utc(task.recurrence_end),
    )


def state_of(task: Task) -> RecurringTaskState:
    return RecurringTaskState(
        anchor=as_utc(task.due_at),
        last_occurrence=as_utc(task.last_occurrence),
        next_occurrence=as_utc(task.next_occurrence),
        status=TaskStatus.from_db(task.status),
        previous_status=TaskStatus.from_db(task.previous_status) if task.previous_status else None,
        is_done=bool(task.is_done),
    )


def _apply_rule(task: Task, rule: RecurrenceRule) -> None:
    task.recurrence = rule.frequency.value
    task.recurrence_every = rule.every
    task.recurrence_dow = rule.day_of_week
    task.recurrence_dom = rule.day_of_month
    task.recurrence_month = rule.month
    task.recurrence_end = as_utc(rule.series_end)


def _clear_recurrence(task: Task) -> None:
    _apply_rule(task, RecurrenceRule())
    task.last_occurrence = None
    task.next_occurrence = None


def get_task(session: Session, task_id: str) -> Task:
    task = session.get(Task, task_id, populate_existing=True)
    if task is None:
        raise ValueError("Task not found")
    return task


def create_task(
    session: Session,
    *,
    title: str,
    description: str | None = None,
    due_at: datetime | None = None,
    status: TaskStatus = TaskStatus.PENDING,
    rule: RecurrenceRule | None = None,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> Task:
    """
    Create a task, optionally recurring.
    - Standard rules fire first at due_at (or now when no due date is given).
    - Period-boundary rules (every=0) fire first at the next period start.
    """
    if not (title or "").strip():
        raise ValueError("Task title is required")
    status = TaskStatus(status)
    if status == TaskStatus.DONE:
        raise ValueError("Task cannot be created as done")

    rule = rule or RecurrenceRule()
    now = now or _utc_now()
    next_occurrence = first_occurrence(rule, due_at, now, tz or configured_tz())

    task = Task(
        title=title.strip(),
        description=description,
        status=status.value,
        is_done=False,
        due_at=as_utc(due_at),
        next_occurrence=as_utc(next_occurrence),
    )
    _apply_rule(task, rule)
    session.add(task)
    session.flush()
    _log_event(session, task.id, "created", meta={"rule": rule.snapshot()} if rule.is_recurring else None)
    session.commit()
    session.refresh(task)
    return task


def complete_task(session: Session, task_id: str) -> Task:
    """User completion; the status in force is kept so the next roll can restore it."""
    task = get_task(session, task_id)
    current = TaskStatus.from_db(task.status)
    if current != TaskStatus.DONE:
        task.previous_status = current.value
    task.status = TaskStatus.DONE.value
    task.is_done = True
    task.updated_at = _utc_now()
    _log_event(session, task.id, "completed", meta={"previous_status": task.previous_status})
    session.commit()
    session.refresh(task)
    return task


def reopen_task(session: Session, task_id: str) -> Task:
    task = get_task(session, task_id)
    previous = TaskStatus.from_db(task.previous_status) if task.previous_status else None
    if previous is None or previous == TaskStatus.DONE:
        previous = TaskStatus.ACTIVE
    task.status = previous.value
    task.is_done = False
    task.updated_at = _utc_now()
    _log_event(session, task.id, "reopened")
    session.commit()
    session.refresh(task)
    return task


def set_recurrence(
    session: Session,
    task_id: str,
    rule: RecurrenceRule,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> Task:
    """
    Replace the task's rule and recompute next_occurrence.

    This is also how an ended series is revived. When the task has already fired,
    the new pointer is computed from last_occurrence so it stays strictly after it.
    A revived task leaves DONE the same way a roll does.
    Raises InvalidRuleError when the new pointer would already be past series_end.
    """
    validate_rule(rule)
    task = get_task(session, task_id)
    if not rule.is_recurring:
        return disable_recurrence(session, task_id)

    now = now or _utc_now()
    zone = tz or configured_tz()
    due_at = as_utc(task.due_at)
    last = as_utc(task.last_occurrence)
    if last is not None:
        wall_time = to_local(due_at, zone).time() if due_at is not None else None
        next_occurrence = next_after(last, rule, now, zone, wall_time=wall_time)
        ensure_within_series(rule, next_occurrence)
    else:
        next_occurrence = first_occurrence(rule, due_at, now, zone)

    revived = (
        last is not None
        and task.next_occurrence is None
        and TaskStatus.from_db(task.status) == TaskStatus.DONE
    )
    _apply_rule(task, rule)
    task.next_occurrence = as_utc(next_occurrence)
    if revived:
        task.status = restored_status(state_of(task)).value
        task.is_done = False
    task.updated_at = _utc_now()
    _log_event(
        session,
        task.id,
        "recurrence_set",
        meta={"rule": rule.snapshot(), "next_occurrence": task.next_occurrence},
    )
    session.commit()
    session.refresh(task)
    return task


def disable_recurrence(session: Session, task_id: str) -> Task:
    task = get_task(session, task_id)
    _clear_recurrence(task)
    task.updated_at = _utc_now()
    _log_event(session, task.id, "recurrence_disabled")
    session.commit()
    session.refresh(task)
    return task


def _paged(stmt, limit: int | None, after: tuple[datetime, str] | None):
    # Keyset on (next_occurrence, id).
    if after is not None:
        after_next, after_id = as_utc(after[0]), after[1]
        stmt = stmt.where(
            or_(
                Task.next_occurrence > after_next,
                and_(Task.next_occurrence == after_next, Task.id > after_id),
            )
        )
    stmt = stmt.order_by(Task.next_occurrence.asc(), Task.id.asc())
    if limit:
        stmt = stmt.limit(int(limit))
    return stmt


def find_due_recurring_tasks(
    session: Session,
    now: datetime,
    limit: int | None = None,
    after: tuple[datetime, str] | None = None,
) -> list[Task]:
    """
    Recurring tasks whose next_occurrence has come, oldest first.

    ``after`` is the (next_occurrence, id) of the last row of the previous page.
    """
    now_utc = as_utc(now)
    stmt = select(Task).where(
        and_(
            Task.recurrence != Frequency.NONE.value,
            Task.next_occurrence.is_not(None),
            Task.next_occurrence <= now_utc,
            or_(Task.recurrence_end.is_(None), Task.recurrence_end > now_utc),
        )
    )
    return list(session.scalars(_paged(stmt, limit, after)).all())


def find_lapsed_recurring_tasks(
    session: Session,
    now: datetime,
    limit: int | None = None,
    after: tuple[datetime, str] | None = None,
) -> list[Task]:
    """Series whose end has passed but which still hold a next_occurrence."""
    now_utc = as_utc(now)
    stmt = select(Task).where(
        and_(
            Task.recurrence != Frequency.NONE.value,
            Task.next_occurrence.is_not(None),
            Task.recurrence_end.is_not(None),
            Task.recurrence_end <= now_utc,
        )
    )
    return list(session.scalars(_paged(stmt, limit, after)).all())


def update_recurrence_state(
    session: Session,
    task_id: str,
    result: RecurrenceUpdate,
    *,
    expected_next: datetime,
) -> bool:
    """
    Persist one roll as a single conditional update.

    Only applies while next_occurrence still equals ``expected_next``; returns
    False when another run got there first.
    """
    now = _utc_now()
    try:
        res = session.execute(
            update(Task)
            .where(Task.id == task_id, Task.next_occurrence == as_utc(expected_next))
            .values(
                last_occurrence=as_utc(result.last_occurrence),
                next_occurrence=as_utc(result.next_occurrence),
                status=result.status.value,
                is_done=result.is_done,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if int(getattr(res, "rowcount", 0) or 0) != 1:
            session.rollback()
            return False
        _log_event(
            session,
            task_id,
            "series_ended" if result.terminated else "recurrence_rolled",
            meta={
                "from": as_utc(expected_next),
                "last_occurrence": as_utc(result.last_occurrence),
                "next_occurrence": as_utc(result.next_occurrence),
                "periods": result.periods,
            },
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(f"update_recurrence_state failed task_id={task_id}: {exc}") from exc
    return True
