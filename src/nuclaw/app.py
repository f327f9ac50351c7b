"""Service lifecycle — wires the store, allowlist, queue and scheduler together.

Startup checks the container runtime, opens the SQLite store under
``data/``, loads the mount allowlist and starts the scheduler loop.
SIGINT/SIGTERM stop the scheduler and kill every running worker before
the store is closed.  A second signal force-exits once the in-flight
kills finish or a short grace period ends.
"""

from __future__ import annotations

import asyncio
import os
import signal

from nuclaw.config import get_settings
from nuclaw.container_runner import run_container
from nuclaw.errors import ContainerSystemError, ExecutionTokenError
from nuclaw.group_queue import GroupQueue
from nuclaw.logger import logger
from nuclaw.mount_security import load_mount_allowlist
from nuclaw.state import SqliteTaskStore
from nuclaw.system_checks import ensure_container_system_running
from nuclaw.task_scheduler import TaskScheduler
from nuclaw.types import (
    ContainerConfig,
    ContainerInput,
    ContainerOutput,
    MountAllowlist,
    ScheduledTask,
)

# How long a forced exit waits for workers that are already being killed.
_FORCE_EXIT_GRACE = 5.0


class NuclawApp:
    def __init__(self) -> None:
        self.queue = GroupQueue()
        self.allowlist: MountAllowlist | None = None
        self.store: SqliteTaskStore | None = None
        self.scheduler: TaskScheduler | None = None
        self._shutting_down = False
        self._queue_shutdown: asyncio.Future[None] | None = None

    async def run_task(self, task: ScheduledTask, config: ContainerConfig) -> ContainerOutput:
        """Run one scheduled task in its group's container."""
        assert self.allowlist is not None
        input_data = ContainerInput(
            prompt=task.prompt,
            metadata={"source": "scheduled_task", "taskId": task.id},
        )
        return await run_container(config, input_data, allowlist=self.allowlist, queue=self.queue)

    async def shutdown(self, sig_name: str) -> None:
        """Stop scheduling and kill running workers.  Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            pending = self._queue_shutdown
            if pending is not None and not pending.done():
                await asyncio.wait({pending}, timeout=_FORCE_EXIT_GRACE)
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        if self.scheduler is not None:
            self.scheduler.stop()
        self._queue_shutdown = asyncio.ensure_future(self.queue.shutdown())
        await self._queue_shutdown

    async def run(self) -> None:
        settings = get_settings()
        logger.info(
            "Starting nuclaw",
            image=settings.container.image,
            runtime=settings.container.runtime_cli,
            data_dir=str(settings.data_dir),
        )

        try:
            ensure_container_system_running()
        except ContainerSystemError as exc:
            logger.critical("Container runtime unavailable, refusing to start", error=str(exc))
            raise

        self.store = await SqliteTaskStore.open()
        self.allowlist = load_mount_allowlist()
        self.scheduler = TaskScheduler(self.store, self.run_task)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self.shutdown(s.name)),
            )

        try:
            await self.scheduler.run()
        except ExecutionTokenError:
            logger.critical("Execution token failure, exiting")
            await self.queue.shutdown()
            raise
        finally:
            await self.store.close()
            logger.info("nuclaw stopped")
