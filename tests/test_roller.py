from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select

from src.core.dates import as_utc
from src.core.errors import PersistenceError
from src.core.recurrence import Frequency, RecurrenceRule
from src.core.rollover import TaskStatus
from src.db.models import Task, TaskEvent
from src.db.repositories.tasks_repo import complete_task, create_task, get_task
from src.scheduler import roller

UTC = timezone.utc


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def _seed(session_factory) -> dict[str, str]:
    ids: dict[str, str] = {}
    with session_factory() as session:
        daily = create_task(
            session,
            title="daily",
            status=TaskStatus.ACTIVE,
            due_at=_utc(2024, 1, 1),
            rule=RecurrenceRule(frequency=Frequency.DAILY, every=1),
        )
        ids["daily"] = daily.id

        weekly = create_task(
            session,
            title="weekly done early",
            status=TaskStatus.PENDING,
            due_at=_utc(2024, 1, 1),
            rule=RecurrenceRule(frequency=Frequency.WEEKLY, every=1, day_of_week=1),
        )
        complete_task(session, weekly.id)
        ids["weekly"] = weekly.id

        ending = create_task(
            session,
            title="ending",
            due_at=_utc(2023, 11, 15),
            rule=RecurrenceRule(frequency=Frequency.MONTHLY, every=1, series_end=_utc(2024, 1, 1)),
        )
        ids["ending"] = ending.id

        broken = Task(
            title="broken rule",
            status="ACTIVE",
            recurrence="MONTHLY",
            recurrence_every=1,
            recurrence_dom=40,
            due_at=_utc(2024, 1, 1),
            next_occurrence=_utc(2024, 1, 1),
        )
        session.add(broken)
        session.commit()
        ids["broken"] = broken.id
    return ids


def test_sweep_rolls_each_task_and_isolates_failures(session_factory) -> None:
    ids = _seed(session_factory)
    now = _utc(2024, 1, 4)

    res = asyncio.run(roller.run_recurrence_sweep("test", now=now))

    assert res["ok"] is True
    stats = res["stats"]
    assert stats["due"] == 3
    assert stats["lapsed"] == 1
    assert stats["rolled"] == 2
    assert stats["terminated"] == 1
    assert stats["invalid_rule"] == 1
    assert stats["failed"] == 1

    with session_factory() as session:
        daily = get_task(session, ids["daily"])
        assert as_utc(daily.last_occurrence) == _utc(2024, 1, 4)
        assert as_utc(daily.next_occurrence) == _utc(2024, 1, 5)
        assert daily.status == "ACTIVE"

        weekly = get_task(session, ids["weekly"])
        assert as_utc(weekly.next_occurrence) == _utc(2024, 1, 8)
        assert weekly.status == "PENDING"
        assert weekly.is_done is False

        ending = get_task(session, ids["ending"])
        assert ending.next_occurrence is None
        assert ending.status == "DONE"
        assert ending.is_done is True
        assert as_utc(ending.last_occurrence) == _utc(2023, 12, 15)

        broken = get_task(session, ids["broken"])
        assert as_utc(broken.next_occurrence) == _utc(2024, 1, 1)
        assert broken.last_occurrence is None

        events = session.scalars(select(TaskEvent.event_type).where(TaskEvent.task_id == ids["ending"])).all()
        assert "series_ended" in events


def test_second_sweep_with_same_now_changes_nothing(session_factory) -> None:
    ids = _seed(session_factory)
    now = _utc(2024, 1, 4)
    asyncio.run(roller.run_recurrence_sweep("first", now=now))

    res = asyncio.run(roller.run_recurrence_sweep("second", now=now))

    stats = res["stats"]
    assert stats["rolled"] == 0
    assert stats["terminated"] == 0
    assert stats["lapsed"] == 0
    assert stats["invalid_rule"] == 1
    with session_factory() as session:
        ending = get_task(session, ids["ending"])
        assert ending.next_occurrence is None
        assert ending.status == "DONE"


def test_persistence_failure_does_not_abort_batch(session_factory, monkeypatch) -> None:
    ids = _seed(session_factory)
    real_update = roller.update_recurrence_state

    def _flaky(session, task_id, result, *, expected_next):
        if task_id == ids["daily"]:
            raise PersistenceError("disk full")
        return real_update(session, task_id, result, expected_next=expected_next)

    monkeypatch.setattr(roller, "update_recurrence_state", _flaky)

    stats = roller.roll_due_tasks(_utc(2024, 1, 4), UTC)

    assert stats["persist_failed"] == 1
    assert stats["rolled"] == 1
    assert stats["terminated"] == 1
    with session_factory() as session:
        daily = get_task(session, ids["daily"])
        assert as_utc(daily.next_occurrence) == _utc(2024, 1, 1)


def test_stale_task_is_skipped(session_factory) -> None:
    ids = _seed(session_factory)
    now = _utc(2024, 1, 4)
    with session_factory() as session:
        stale = get_task(session, ids["daily"])

    roller.roll_due_tasks(now, UTC)
    stats = roller._empty_stats()
    roller._roll_one(stale, now, UTC, stats)

    assert stats["skipped"] == 1
    with session_factory() as session:
        daily = get_task(session, ids["daily"])
        assert as_utc(daily.next_occurrence) == _utc(2024, 1, 5)


def test_overlapping_sweep_is_skipped(session_factory) -> None:
    async def _overlap() -> dict:
        async with roller._lock:
            return await roller.run_recurrence_sweep("overlap", now=_utc(2024, 1, 4))

    assert asyncio.run(_overlap()) == {"skipped": True}


def test_roller_status_reports_last_sweep(session_factory) -> None:
    _seed(session_factory)
    asyncio.run(roller.run_recurrence_sweep("status", now=_utc(2024, 1, 4)))

    status = roller.get_roller_status()
    assert status["last_sweep_at"]
    assert status["last_sweep_stats"]["invalid_rule"] == 1
    assert status["last_sweep_error"] == ""
    assert status["running"] is False


def test_seconds_until_next_run() -> None:
    assert roller.seconds_until_next_run(_utc(2024, 1, 1, 23, 0), UTC) == 3600
    berlin = ZoneInfo("Europe/Berlin")
    # Local midnight before the spring-forward switch is 23:00 UTC.
    assert roller.seconds_until_next_run(_utc(2024, 3, 30, 22, 30), berlin) == 1800


def test_small_batches_page_past_tasks_with_broken_rules(session_factory) -> None:
    with session_factory() as session:
        for n in (1, 2):
            session.add(
                Task(
                    title=f"broken {n}",
                    status="ACTIVE",
                    recurrence="MONTHLY",
                    recurrence_every=1,
                    recurrence_dom=40,
                    due_at=_utc(2023, 1, n),
                    next_occurrence=_utc(2023, 1, n),
                )
            )
        session.commit()
        daily = create_task(
            session,
            title="daily",
            due_at=_utc(2024, 1, 1),
            rule=RecurrenceRule(frequency=Frequency.DAILY),
        )
        daily_id = daily.id

    for day in (4, 5):
        stats = roller.roll_due_tasks(_utc(2024, 1, day), UTC, batch_limit=1)
        assert stats["invalid_rule"] == 2
        assert stats["rolled"] == 1
        assert stats["due"] == 3

    with session_factory() as session:
        daily = get_task(session, daily_id)
        assert as_utc(daily.last_occurrence) == _utc(2024, 1, 5)
        assert as_utc(daily.next_occurrence) == _utc(2024, 1, 6)
