"""Scheduled task storage and run logging (SQLite via aiosqlite)."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from nuclaw.errors import StorageError
from nuclaw.logger import logger
from nuclaw.state.connection import open_database
from nuclaw.types import ScheduledTask, TaskRunLog
from nuclaw.utils import from_iso, to_iso, utc_now

_EXCERPT_CHARS = 2000


def _row_to_task(row: aiosqlite.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        group_id=row["group_id"],
        prompt=row["prompt"],
        schedule_type=row["schedule_type"],
        schedule_value=row["schedule_value"],
        next_run_at=from_iso(row["next_run_at"]),
        last_run_at=from_iso(row["last_run_at"]),
        enabled=bool(row["enabled"]),
        created_at=from_iso(row["created_at"]),
    )


def _row_to_log(row: aiosqlite.Row) -> TaskRunLog:
    started = from_iso(row["started_at"])
    finished = from_iso(row["finished_at"])
    assert started is not None and finished is not None
    return TaskRunLog(
        task_id=row["task_id"],
        started_at=started,
        finished_at=finished,
        outcome=row["outcome"],
        output_excerpt=row["output_excerpt"],
    )


class SqliteTaskStore:
    """TaskStore backed by a single aiosqlite connection.

    Python's sqlite3 opens transactions implicitly per connection, not per
    coroutine, so every multi-statement write goes through
    :meth:`atomic_write` to keep concurrent coroutines from interleaving.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Path | str | None = None) -> SqliteTaskStore:
        return cls(await open_database(path))

    async def close(self) -> None:
        await self._db.close()

    @asynccontextmanager
    async def atomic_write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock; commit on success, roll back on failure.

        sqlite errors surface as StorageError.
        """
        async with self._write_lock:
            try:
                yield self._db
                await self._db.commit()
            except sqlite3.Error as exc:
                await self._db.rollback()
                raise StorageError(str(exc)) from exc
            except Exception:
                await self._db.rollback()
                raise

    # --- CRUD ---

    async def create_task(self, task: ScheduledTask) -> None:
        created_at = task.created_at or utc_now()
        async with self.atomic_write() as db:
            await db.execute(
                """
                INSERT INTO scheduled_tasks
                    (id, group_id, prompt, schedule_type, schedule_value,
                     next_run_at, last_run_at, enabled, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.group_id,
                    task.prompt,
                    task.schedule_type,
                    task.schedule_value,
                    to_iso(task.next_run_at),
                    to_iso(task.last_run_at),
                    int(task.enabled),
                    to_iso(created_at),
                ),
            )

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        cursor = await self._db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
        row = await cursor.fetchone()
        return _row_to_task(row) if row is not None else None

    async def get_run_logs(self, task_id: str) -> list[TaskRunLog]:
        """Run history for a task, oldest first."""
        cursor = await self._db.execute(
            "SELECT * FROM task_run_logs WHERE task_id = ? ORDER BY started_at, id",
            (task_id,),
        )
        return [_row_to_log(row) for row in await cursor.fetchall()]

    # --- Scheduler contract ---

    async def fetch_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Enabled tasks whose next_run_at is at or before *now*."""
        try:
            cursor = await self._db.execute(
                """
                SELECT * FROM scheduled_tasks
                WHERE enabled = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?
                ORDER BY next_run_at
                """,
                (to_iso(now),),
            )
            rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        return [_row_to_task(row) for row in rows]

    async def claim_task(
        self,
        task_id: str,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
        enabled: bool,
    ) -> bool:
        """Advance (or disable) a due task before dispatch.

        Succeeds only when the stored next_run_at still equals the value
        observed at fetch time, so a task is dispatched at most once per
        due instant.
        """
        async with self.atomic_write() as db:
            cursor = await db.execute(
                """
                UPDATE scheduled_tasks
                SET next_run_at = ?, enabled = ?
                WHERE id = ? AND enabled = 1 AND next_run_at IS ?
                """,
                (to_iso(next_run_at), int(enabled), task_id, to_iso(expected_next_run_at)),
            )
            claimed = cursor.rowcount == 1
        if not claimed:
            logger.debug("Task claim lost", task_id=task_id)
        return claimed

    async def update_after_run(
        self,
        task_id: str,
        next_run_at: datetime | None,
        enabled: bool,
        log: TaskRunLog,
    ) -> None:
        """Record a run log and the task's ``last_run_at`` in one transaction.

        The schedule state itself was written by :meth:`claim_task`;
        *next_run_at* and *enabled* are those claimed values.  A task that no
        longer matches them was edited during the run, and the edit is kept.
        """
        excerpt = log.output_excerpt
        if excerpt is not None and len(excerpt) > _EXCERPT_CHARS:
            excerpt = excerpt[:_EXCERPT_CHARS]
        async with self.atomic_write() as db:
            await db.execute(
                """
                INSERT INTO task_run_logs
                    (task_id, started_at, finished_at, duration_ms, outcome, output_excerpt)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    to_iso(log.started_at),
                    to_iso(log.finished_at),
                    round(log.duration_ms),
                    log.outcome,
                    excerpt,
                ),
            )
            cursor = await db.execute(
                """
                UPDATE scheduled_tasks
                SET last_run_at = ?
                WHERE id = ? AND next_run_at IS ? AND enabled = ?
                """,
                (to_iso(log.started_at), task_id, to_iso(next_run_at), int(enabled)),
            )
            if cursor.rowcount == 0:
                logger.info("Task changed during run, keeping its new schedule", task_id=task_id)
                await db.execute(
                    "UPDATE scheduled_tasks SET last_run_at = ? WHERE id = ?",
                    (to_iso(log.started_at), task_id),
                )
