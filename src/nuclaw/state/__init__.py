"""Task storage.

The scheduler depends only on the :class:`TaskStore` protocol;
:class:`SqliteTaskStore` is the aiosqlite implementation the service uses.

  schema      — DDL
  connection  — connection lifecycle
  tasks       — SqliteTaskStore (task CRUD, claims, run logging)
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from nuclaw.state.connection import open_database
from nuclaw.state.tasks import SqliteTaskStore
from nuclaw.types import ScheduledTask, TaskRunLog


class TaskStore(Protocol):
    async def fetch_due_tasks(self, now: datetime) -> list[ScheduledTask]: ...

    async def claim_task(
        self,
        task_id: str,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
        enabled: bool,
    ) -> bool: ...

    async def update_after_run(
        self,
        task_id: str,
        next_run_at: datetime | None,
        enabled: bool,
        log: TaskRunLog,
    ) -> None: ...


__all__ = ["SqliteTaskStore", "TaskStore", "open_database"]
