"""Per-group execution tokens.

At most one worker runs per group at any time.  Callers hold the group's
token for the whole life of a worker, from before spawn until it has
exited or been killed.  Different groups run in parallel; the scheduler
bounds overall concurrency separately.

Waiting for a token longer than ``token_timeout`` means a worker is stuck
past its own timeout (or a bug), so it raises ExecutionTokenError instead
of blocking forever.  After shutdown() every request is refused with
QueueShutdownError, which is an ordinary stop and not a deadlock.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nuclaw.errors import ExecutionTokenError, QueueShutdownError
from nuclaw.logger import logger

if TYPE_CHECKING:
    from nuclaw.container_runner._process import WorkerProcess


@dataclass
class GroupState:
    lock: asyncio.Lock
    waiting: int = 0
    worker: WorkerProcess | None = None

    def release(self) -> None:
        self.worker = None


def default_token_timeout() -> float:
    """Twice the container timeout plus a grace period for kill and cleanup."""
    from nuclaw.config import get_settings

    return get_settings().container_timeout * 2 + 30.0


class GroupQueue:
    """Dict of per-group locks plus a registry of running workers."""

    def __init__(self, token_timeout: float | None = None) -> None:
        self.token_timeout = token_timeout if token_timeout is not None else default_token_timeout()
        self._groups: dict[str, GroupState] = {}
        self._shutting_down = False

    def _get_group(self, group_id: str) -> GroupState:
        if group_id not in self._groups:
            self._groups[group_id] = GroupState(lock=asyncio.Lock())
        return self._groups[group_id]

    def is_active(self, group_id: str) -> bool:
        state = self._groups.get(group_id)
        return state is not None and state.lock.locked()

    @contextlib.asynccontextmanager
    async def acquire(self, group_id: str) -> AsyncIterator[None]:
        """Hold *group_id*'s execution token for the duration of the block.

        Raises:
            QueueShutdownError: the queue is shut down.
            ExecutionTokenError: the token was not available within
                ``token_timeout`` seconds.
        """
        if self._shutting_down:
            raise QueueShutdownError(f"GroupQueue is shut down, refusing token for {group_id}")

        state = self._get_group(group_id)
        state.waiting += 1
        try:
            await asyncio.wait_for(state.lock.acquire(), self.token_timeout)
        except TimeoutError:
            logger.critical(
                "Execution token not acquired in time",
                group=group_id,
                token_timeout=self.token_timeout,
            )
            raise ExecutionTokenError(
                f"Timed out after {self.token_timeout:.1f}s waiting for group {group_id}"
            ) from None
        finally:
            state.waiting -= 1

        try:
            if self._shutting_down:
                raise QueueShutdownError(
                    f"GroupQueue is shut down, refusing token for {group_id}"
                )
            yield
        finally:
            state.release()
            state.lock.release()

    def register_process(self, group_id: str, worker: WorkerProcess) -> None:
        """Associate a running worker with a group so shutdown can kill it."""
        self._get_group(group_id).worker = worker

    def unregister_process(self, group_id: str) -> None:
        state = self._groups.get(group_id)
        if state is not None:
            state.release()

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Return a read-only snapshot of token state for status reporting."""
        per_group: dict[str, dict[str, object]] = {}
        for gid, state in self._groups.items():
            worker = state.worker
            per_group[gid] = {
                "active": state.lock.locked(),
                "waiting": state.waiting,
                "container": worker.container_name if worker else None,
                "state": worker.state if worker else None,
            }
        per_group["_meta"] = {
            "active_count": sum(1 for s in self._groups.values() if s.lock.locked()),
            "shutting_down": self._shutting_down,
        }
        return per_group

    async def shutdown(self) -> None:
        """Refuse new tokens and kill every registered worker."""
        self._shutting_down = True
        active = [
            s.worker for s in self._groups.values() if s.worker is not None and s.worker.is_alive()
        ]
        if not active:
            logger.info("GroupQueue shutdown complete (no active workers)")
            return

        logger.info(
            "GroupQueue shutting down, killing workers",
            active_count=len(active),
            containers=[w.container_name for w in active],
        )
        results = await asyncio.gather(*(w.kill() for w in active), return_exceptions=True)
        for worker, result in zip(active, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to kill worker",
                    container=worker.container_name,
                    error=str(result),
                )
        logger.info("GroupQueue shutdown complete", stopped_count=len(active))
