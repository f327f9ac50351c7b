"""Task scheduler — runs scheduled tasks on their due dates.

Each poll fetches due tasks, claims them in the store (advancing
``next_run_at`` or disabling one-shot tasks) and dispatches the claimed
ones under a concurrency bound.  The claim happens before the run starts,
so a crash mid-run never causes a one-shot task to run twice and a slow
run never gets picked up again by the next poll.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from nuclaw.config import get_settings
from nuclaw.errors import (
    ExecutionTokenError,
    InvalidScheduleError,
    NuclawError,
    QueueShutdownError,
    StorageError,
)
from nuclaw.logger import logger
from nuclaw.state import TaskStore
from nuclaw.types import ContainerConfig, ContainerOutput, ScheduledTask, TaskRunLog
from nuclaw.utils import utc_now

RunTask = Callable[[ScheduledTask, ContainerConfig], Awaitable[ContainerOutput]]

_INTERVAL_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_UNIT_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}

_EXCERPT_CHARS = 2000


# ---------------------------------------------------------------------------
# Schedule computation
# ---------------------------------------------------------------------------


def _zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using UTC", timezone=timezone)
        return ZoneInfo("UTC")


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_interval(value: str) -> timedelta:
    """Parse ``"3600000"`` (ms) or a suffixed duration like ``"30s"``, ``"5m"``, ``"2h"``."""
    match = _INTERVAL_RE.match(value)
    if match is None:
        raise InvalidScheduleError("interval", value, "expected a positive duration")
    amount = int(match.group(1))
    unit = (match.group(2) or "ms").lower()
    ms = amount * _UNIT_MS[unit]
    if ms <= 0:
        raise InvalidScheduleError("interval", value, "interval must be positive")
    return timedelta(milliseconds=ms)


def _cron_expression(value: str) -> str:
    """Accept 5 fields, or 6 with a leading seconds field.

    croniter expects seconds as a trailing sixth field, so a leading one is
    rotated to the end.
    """
    fields = value.split()
    if len(fields) == 5:
        return " ".join(fields)
    if len(fields) == 6:
        return " ".join([*fields[1:], fields[0]])
    raise InvalidScheduleError("cron", value, f"expected 5 or 6 fields, got {len(fields)}")


def _next_cron(value: str, now: datetime, timezone: str) -> datetime:
    expr = _cron_expression(value)
    try:
        it = croniter(expr, now.astimezone(_zone(timezone)))
        nxt = it.get_next(datetime)
    except (ValueError, KeyError) as exc:
        # croniter's errors subclass ValueError
        raise InvalidScheduleError("cron", value, str(exc)) from exc
    return _as_utc(nxt)


def _parse_once(value: str, timezone: str) -> datetime:
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidScheduleError("once", value, "expected an ISO-8601 timestamp") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_zone(timezone))
    return dt.astimezone(UTC)


def compute_next_run(
    schedule_type: str,
    schedule_value: str,
    *,
    now: datetime,
    anchor: datetime | None = None,
    timezone: str = "UTC",
) -> datetime | None:
    """Compute the next run instant (UTC) strictly after *now*.

    Interval schedules do not drift: the result is ``anchor + k * interval``
    for the smallest ``k >= 1`` that lands after *now*, where *anchor* is
    the previous ``next_run_at``.  Without an anchor it is ``now + interval``.

    Returns None for ``once`` tasks (no recurrence).

    Raises:
        InvalidScheduleError: the value cannot be parsed for its type.
    """
    now = _as_utc(now)

    if schedule_type == "cron":
        return _next_cron(schedule_value, now, timezone)

    if schedule_type == "interval":
        interval = parse_interval(schedule_value)
        if anchor is None:
            return now + interval
        anchor = _as_utc(anchor)
        k = max(1, (now - anchor) // interval + 1)
        return anchor + k * interval

    if schedule_type == "once":
        _parse_once(schedule_value, timezone)
        return None

    raise InvalidScheduleError(schedule_type, schedule_value, "unknown schedule type")


def initial_next_run(
    schedule_type: str,
    schedule_value: str,
    *,
    now: datetime | None = None,
    timezone: str = "UTC",
) -> datetime:
    """First ``next_run_at`` for a newly created task.

    A naive ``once`` timestamp is read in *timezone*.
    """
    now = now or utc_now()
    if schedule_type == "once":
        return _parse_once(schedule_value, timezone)
    nxt = compute_next_run(schedule_type, schedule_value, now=now, timezone=timezone)
    assert nxt is not None
    return nxt


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class TaskScheduler:
    """Periodic poll driver with bounded concurrent dispatch."""

    def __init__(
        self,
        store: TaskStore,
        run_task: RunTask,
        *,
        poll_interval: float | None = None,
        max_concurrent: int | None = None,
        task_timeout: float | None = None,
        timezone: str | None = None,
    ) -> None:
        s = get_settings().scheduler
        self.store = store
        self.run_task = run_task
        self.poll_interval = poll_interval if poll_interval is not None else s.poll_interval
        self.max_concurrent = max_concurrent if max_concurrent is not None else s.max_concurrent
        self.task_timeout = task_timeout if task_timeout is not None else s.task_timeout
        self.timezone = timezone or s.timezone

        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._in_flight: set[str] = set()
        self._active: set[asyncio.Task[None]] = set()
        self._invalid_logged: dict[str, str] = {}
        self._stop_event = asyncio.Event()
        self._fatal: ExecutionTokenError | None = None
        self._running = False

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def _run_timeout_ms(self) -> int:
        container_secs = get_settings().container_timeout
        return int(min(container_secs, self.task_timeout) * 1000)

    def _warn_invalid(self, task: ScheduledTask, exc: InvalidScheduleError) -> None:
        # Once per (task, value) until the value changes.
        if self._invalid_logged.get(task.id) == task.schedule_value:
            return
        self._invalid_logged[task.id] = task.schedule_value
        logger.warning(
            "Skipping task with invalid schedule",
            task_id=task.id,
            group=task.group_id,
            schedule_type=task.schedule_type,
            schedule_value=task.schedule_value,
            reason=exc.reason,
        )

    async def poll_once(self, now: datetime | None = None, *, wait: bool = True) -> int:
        """Claim and dispatch every due task; return how many were dispatched.

        With *wait* (the default) this returns after all dispatched runs
        finish, re-raising ExecutionTokenError if any run hit one.
        """
        now = now or utc_now()
        due = await self.store.fetch_due_tasks(now)
        if due:
            logger.info("Found due tasks", count=len(due))

        dispatched: list[asyncio.Task[None]] = []
        for task in due:
            if task.id in self._in_flight:
                logger.debug("Task still running, skipping", task_id=task.id)
                continue

            try:
                next_run = compute_next_run(
                    task.schedule_type,
                    task.schedule_value,
                    now=now,
                    anchor=task.next_run_at,
                    timezone=self.timezone,
                )
            except InvalidScheduleError as exc:
                self._warn_invalid(task, exc)
                continue
            self._invalid_logged.pop(task.id, None)

            enabled = task.schedule_type != "once"
            if not await self.store.claim_task(task.id, task.next_run_at, next_run, enabled):
                continue

            self._in_flight.add(task.id)
            run = asyncio.create_task(
                self._dispatch(task, next_run, enabled), name=f"task-{task.id}"
            )
            self._active.add(run)
            run.add_done_callback(self._on_run_done)
            dispatched.append(run)

        if wait and dispatched:
            results = await asyncio.gather(*dispatched, return_exceptions=True)
            for result in results:
                if isinstance(result, ExecutionTokenError):
                    raise result
        return len(dispatched)

    def _on_run_done(self, run: asyncio.Task[None]) -> None:
        self._active.discard(run)
        if run.cancelled():
            return
        exc = run.exception()
        if isinstance(exc, ExecutionTokenError) and self._fatal is None:
            self._fatal = exc
            self._stop_event.set()
        elif exc is not None and not isinstance(exc, ExecutionTokenError):
            logger.error("Task dispatch failed", task_name=run.get_name(), exc_info=exc)

    async def _dispatch(
        self, task: ScheduledTask, next_run: datetime | None, enabled: bool
    ) -> None:
        try:
            async with self._semaphore:
                await self._run_one(task, next_run, enabled)
        finally:
            self._in_flight.discard(task.id)

    async def _run_one(
        self, task: ScheduledTask, next_run: datetime | None, enabled: bool
    ) -> None:
        started = utc_now()
        config = ContainerConfig.for_group(task.group_id, timeout_ms=self._run_timeout_ms())
        logger.info("Running scheduled task", task_id=task.id, group=task.group_id)

        excerpt: str | None = None
        try:
            output = await self.run_task(task, config)
        except ExecutionTokenError:
            logger.critical(
                "Execution token failure, scheduler cannot continue",
                task_id=task.id,
                group=task.group_id,
            )
            raise
        except QueueShutdownError as exc:
            outcome = exc.kind
            excerpt = str(exc)
            logger.info("Task run refused, shutting down", task_id=task.id, group=task.group_id)
        except NuclawError as exc:
            outcome = exc.kind
            excerpt = str(exc)
            logger.error(
                "Scheduled task failed",
                task_id=task.id,
                group=task.group_id,
                kind=exc.kind,
                error=str(exc),
            )
        except Exception as exc:
            outcome = "error"
            excerpt = f"{type(exc).__name__}: {exc}"
            logger.exception("Scheduled task crashed", task_id=task.id, group=task.group_id)
        else:
            outcome = output.status
            excerpt = output.text
            finished = utc_now()
            logger.info(
                "Task completed",
                task_id=task.id,
                status=output.status,
                duration_ms=round((finished - started).total_seconds() * 1000),
            )

        if excerpt is not None:
            excerpt = excerpt[:_EXCERPT_CHARS]
        log = TaskRunLog(
            task_id=task.id,
            started_at=started,
            finished_at=utc_now(),
            outcome=outcome,
            output_excerpt=excerpt,
        )
        try:
            await self.store.update_after_run(task.id, next_run, enabled, log)
        except StorageError as exc:
            logger.error("Failed to record task run", task_id=task.id, error=str(exc))

    # --- Loop ---

    async def run(self) -> None:
        """Poll every ``poll_interval`` seconds until :meth:`stop` is called.

        Raises ExecutionTokenError if a run hit one; any other poll error is
        logged and the loop continues.
        """
        if self._running:
            logger.debug("Scheduler loop already running, skipping duplicate start")
            return
        self._running = True
        self._stop_event.clear()
        logger.info(
            "Scheduler loop started",
            poll_interval=self.poll_interval,
            max_concurrent=self.max_concurrent,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.poll_once(wait=False)
                except Exception as exc:
                    logger.error("Error in scheduler loop", err=str(exc))
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), self.poll_interval)
        finally:
            self._running = False
            if self._active:
                await asyncio.gather(*list(self._active), return_exceptions=True)
            logger.info("Scheduler loop stopped")

        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        self._stop_event.set()
