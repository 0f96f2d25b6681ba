from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone, tzinfo

from loguru import logger

from src.config import settings
from src.core.dates import as_utc, configured_tz, local_midnight, to_local
from src.core.errors import InvalidRuleError, NonAdvancingOccurrenceError, PersistenceError
from src.core.rollover import roll_forward
from src.db.models import Task
from src.db.repositories.tasks_repo import (
    find_due_recurring_tasks,
    find_lapsed_recurring_tasks,
    rule_of,
    state_of,
    update_recurrence_state,
)
from src.db.session import get_session

_lock = asyncio.Lock()
_last_sweep_at: datetime | None = None
_last_sweep_stats: dict[str, int] | None = None
_last_sweep_error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _fmt_dt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def _empty_stats() -> dict[str, int]:
    return {
        "due": 0,
        "lapsed": 0,
        "rolled": 0,
        "terminated": 0,
        "unchanged": 0,
        "skipped": 0,
        "failed": 0,
        "invalid_rule": 0,
        "non_advancing": 0,
        "persist_failed": 0,
    }


def _raw_rule(task: Task) -> dict:
    return {
        "recurrence": task.recurrence,
        "every": task.recurrence_every,
        "dow": task.recurrence_dow,
        "dom": task.recurrence_dom,
        "month": task.recurrence_month,
        "end": _fmt_dt(task.recurrence_end),
    }


def _roll_one(task: Task, now: datetime, tz: tzinfo, stats: dict[str, int]) -> None:
    task_id = task.id
    try:
        rule = rule_of(task)
        state = state_of(task)
        result = roll_forward(rule, state, now, tz)
        if result is None:
            stats["unchanged"] += 1
            return
        with get_session() as session:
            applied = update_recurrence_state(
                session,
                task_id,
                result,
                expected_next=state.next_occurrence,
            )
        if not applied:
            stats["skipped"] += 1
            logger.info("recurrence roll skipped task_id={} reason=stale_next_occurrence", task_id)
            return
        if result.terminated:
            stats["terminated"] += 1
            logger.info(
                "recurrence series ended task_id={} last_occurrence={}",
                task_id,
                _fmt_dt(result.last_occurrence),
            )
        else:
            stats["rolled"] += 1
            logger.debug(
                "recurrence rolled task_id={} periods={} next_occurrence={}",
                task_id,
                result.periods,
                _fmt_dt(result.next_occurrence),
            )
    except InvalidRuleError as exc:
        stats["failed"] += 1
        stats["invalid_rule"] += 1
        logger.error("recurrence invalid rule task_id={} rule={} err={}", task_id, _raw_rule(task), exc)
    except NonAdvancingOccurrenceError as exc:
        stats["failed"] += 1
        stats["non_advancing"] += 1
        logger.error("recurrence non-advancing occurrence task_id={} rule={} err={}", task_id, _raw_rule(task), exc)
    except PersistenceError as exc:
        stats["failed"] += 1
        stats["persist_failed"] += 1
        logger.error("recurrence persist error task_id={} err={}", task_id, exc)
    except Exception:
        stats["failed"] += 1
        logger.exception("recurrence roll error task_id={} rule={}", task_id, _raw_rule(task))


def roll_due_tasks(now: datetime, tz: tzinfo, *, batch_limit: int | None = None) -> dict[str, int]:
    """
    One sweep over due and lapsed recurring tasks.

    Each task is rolled and written on its own; a failure on one task is counted
    and logged, never propagated to the rest of the batch. Tasks are read in
    pages of ``batch_limit`` until a short page; each page resumes after the
    last row of the previous one.
    """
    stats = _empty_stats()
    for key, finder in (("due", find_due_recurring_tasks), ("lapsed", find_lapsed_recurring_tasks)):
        after: tuple[datetime, str] | None = None
        while True:
            with get_session() as session:
                page = finder(session, now, limit=batch_limit, after=after)
            stats[key] += len(page)
            for task in page:
                _roll_one(task, now, tz, stats)
            if not batch_limit or len(page) < batch_limit:
                break
            last = page[-1]
            after = (as_utc(last.next_occurrence), last.id)
    return stats


async def run_recurrence_sweep(reason: str, now: datetime | None = None) -> dict:
    global _last_sweep_at
    global _last_sweep_stats
    global _last_sweep_error

    if _lock.locked():
        logger.warning("recurrence sweep skipped reason={} status=locked", reason)
        return {"skipped": True}

    async with _lock:
        now = now or _utc_now()
        tz = configured_tz()
        logger.info("recurrence sweep start reason={} now={} tz={}", reason, now.isoformat(), settings.timezone)
        try:
            stats = await asyncio.to_thread(
                roll_due_tasks,
                now,
                tz,
                batch_limit=max(1, int(settings.recurrence_batch_limit)),
            )
        except Exception as exc:
            _last_sweep_error = str(exc)[:300]
            logger.exception("recurrence sweep error reason={}", reason)
            return {"ok": False, "error": _last_sweep_error}

        _last_sweep_at = _utc_now()
        _last_sweep_stats = stats
        _last_sweep_error = None
        stuck = stats["invalid_rule"] + stats["non_advancing"]
        if stuck:
            logger.warning("recurrence sweep stuck_tasks={} reason={}", stuck, reason)
        logger.info("recurrence sweep end reason={} stats={}", reason, stats)
        return {"ok": True, "stats": stats}


def seconds_until_next_run(now: datetime, tz: tzinfo) -> float:
    """Seconds from ``now`` to the next local midnight in ``tz``."""
    local = to_local(now, tz)
    next_midnight = local_midnight(local.date() + timedelta(days=1), tz)
    delta = next_midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc)
    return max(1.0, delta.total_seconds())


async def run_roller_loop() -> None:
    logger.info(
        "recurrence roller started tz={} roll_on_startup={}",
        settings.timezone,
        settings.recurrence_roll_on_startup,
    )
    try:
        if settings.recurrence_roll_on_startup:
            await run_recurrence_sweep("startup")
        while True:
            delay = seconds_until_next_run(_utc_now(), configured_tz())
            logger.debug("recurrence roller sleep_sec={}", int(delay))
            await asyncio.sleep(delay)
            await run_recurrence_sweep("midnight")
    except asyncio.CancelledError:
        logger.info("recurrence roller stopped")
        raise


def get_roller_status() -> dict:
    return {
        "last_sweep_at": _fmt_dt(_last_sweep_at),
        "last_sweep_stats": dict(_last_sweep_stats) if _last_sweep_stats else None,
        "last_sweep_error": _last_sweep_error or "",
        "running": _lock.locked(),
    }
