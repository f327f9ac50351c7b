"""Process management — bounded output capture, wall-clock timeout, tree kill.

Provides:
  - WorkerProcess — one worker invocation: start(), wait(timeout), kill()
  - _docker_rm_force() — async force-remove a container by name

The worker runs in its own session so the whole process group can be
signalled; the container itself is removed through the runtime CLI since
killing the client does not stop the container.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from typing import Literal

from nuclaw.errors import ContainerTimeoutError, OutputTooLargeError, SpawnFailedError
from nuclaw.logger import logger

RunState = Literal["pending", "running", "completed", "timed_out", "failed"]

_CHUNK_SIZE = 8192


class WorkerProcess:
    """A cancellable worker invocation.

    State machine: ``pending → running → completed | timed_out | failed``.
    Output is captured from the combined stdout/stderr stream up to
    *max_output_bytes*; exceeding it or the timeout kills the worker and
    discards whatever was captured.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        container_name: str,
        group_id: str,
        max_output_bytes: int,
    ) -> None:
        self.argv = argv
        self.container_name = container_name
        self.group_id = group_id
        self.max_output_bytes = max_output_bytes
        self.state: RunState = "pending"
        self.exit_code: int | None = None
        self.duration_ms: float = 0.0
        self._proc: asyncio.subprocess.Process | None = None
        self._buf = bytearray()
        self._started_at = 0.0

    @property
    def runtime_cli(self) -> str:
        return self.argv[0]

    @property
    def output(self) -> str:
        return self._buf.decode(errors="replace")

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        """Spawn the worker.  Raises SpawnFailedError if the CLI cannot start."""
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            self.state = "failed"
            raise SpawnFailedError(f"Spawn failed: {exc}") from exc
        self._started_at = time.monotonic()
        self.state = "running"

    async def _collect(self) -> int:
        assert self._proc is not None
        assert self._proc.stdout is not None
        while True:
            chunk = await self._proc.stdout.read(_CHUNK_SIZE)
            if not chunk:
                break
            if len(self._buf) + len(chunk) > self.max_output_bytes:
                raise OutputTooLargeError(self.max_output_bytes)
            self._buf.extend(chunk)
        return await self._proc.wait()

    async def wait(self, timeout: float) -> int:
        """Capture output until exit; return the exit code.

        Raises:
            ContainerTimeoutError: *timeout* seconds elapsed first.
            OutputTooLargeError: the output bound was exceeded.

        A cancelled wait kills the worker before re-raising, so the caller
        never outlives its container.
        """
        if self._proc is None:
            raise RuntimeError("WorkerProcess.wait() called before start()")
        try:
            self.exit_code = await asyncio.wait_for(self._collect(), timeout)
        except TimeoutError:
            self.state = "timed_out"
            logger.error(
                "Container timeout, killing worker",
                group=self.group_id,
                container=self.container_name,
                timeout_secs=timeout,
            )
            await self._abort()
            raise ContainerTimeoutError(timeout) from None
        except OutputTooLargeError:
            self.state = "failed"
            logger.error(
                "Container output exceeded limit, killing worker",
                group=self.group_id,
                container=self.container_name,
                limit=self.max_output_bytes,
            )
            await self._abort()
            raise
        except asyncio.CancelledError:
            self.state = "failed"
            logger.warning(
                "Run cancelled, killing worker",
                group=self.group_id,
                container=self.container_name,
            )
            await asyncio.shield(self.kill())
            raise
        finally:
            self.duration_ms = (time.monotonic() - self._started_at) * 1000

        self.state = "completed" if self.exit_code == 0 else "failed"
        return self.exit_code

    async def _abort(self) -> None:
        self._buf.clear()
        await self.kill()

    async def kill(self) -> None:
        """Kill the worker, its descendants, and the container."""
        proc = self._proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(proc.pid, signal.SIGKILL)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "Worker did not exit after SIGKILL",
                    group=self.group_id,
                    pid=proc.pid,
                )
        await _docker_rm_force(self.runtime_cli, self.container_name)


async def _docker_rm_force(runtime_cli: str, container_name: str) -> None:
    """Force-remove a container by name, ignoring expected errors."""
    try:
        proc = await asyncio.create_subprocess_exec(
            runtime_cli,
            "rm",
            "-f",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        # CLI missing or not executable
        logger.debug("rm -f failed", container=container_name, err=str(exc))
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=10.0)
    except TimeoutError:
        logger.warning("rm -f timed out", container=container_name)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
