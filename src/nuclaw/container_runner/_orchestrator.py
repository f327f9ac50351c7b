"""Main entry point — spawns a worker container, waits for it, returns the result."""

from __future__ import annotations

import re
import time
from pathlib import Path

from nuclaw.config import get_settings
from nuclaw.container_runner._logging import _write_run_log
from nuclaw.container_runner._mounts import _build_container_args, _build_volume_mounts
from nuclaw.container_runner._process import WorkerProcess
from nuclaw.container_runner._serialization import _input_to_dict, parse_container_output
from nuclaw.errors import NonZeroExitError, RunError, SpawnFailedError
from nuclaw.group_queue import GroupQueue
from nuclaw.logger import logger
from nuclaw.types import ContainerConfig, ContainerInput, ContainerOutput, MountAllowlist
from nuclaw.utils import write_json_atomic

_GROUP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

_OUTPUT_TAIL_CHARS = 200


def validate_group_id(group_id: str) -> None:
    """Group ids become directory and container names; reject anything else."""
    if not _GROUP_ID_RE.match(group_id):
        raise SpawnFailedError(f"Invalid group id {group_id!r}")


def oneshot_container_name(group_id: str) -> str:
    """Timestamped container name for one-shot runs."""
    return f"nuclaw-{group_id}-{int(time.time() * 1000)}"


def group_dir(group_id: str) -> Path:
    return get_settings().groups_dir / group_id


def ipc_dir(group_id: str) -> Path:
    return get_settings().data_dir / "ipc" / group_id


def _write_initial_input(input_data: ContainerInput, input_dir: Path) -> None:
    """Write ContainerInput as initial.json for the worker to read on startup."""
    write_json_atomic(input_dir / "initial.json", _input_to_dict(input_data))


async def run_container(
    config: ContainerConfig,
    input_data: ContainerInput,
    *,
    allowlist: MountAllowlist,
    queue: GroupQueue,
) -> ContainerOutput:
    """Run one worker for ``config.group_id`` and return its parsed result.

    Mounts are validated before the group's execution token is taken, so a
    rejected mount never spawns anything.  The token is held until the
    worker has exited or been killed.

    Raises:
        MountValidationError: a requested extra mount was rejected.
        SpawnFailedError, ContainerTimeoutError, OutputTooLargeError,
        NonZeroExitError: the run failed.
        ParseError: the worker exited cleanly but its output framing is broken.
        ExecutionTokenError: the group's token could not be acquired.
    """
    validate_group_id(config.group_id)
    s = get_settings()

    gdir = group_dir(config.group_id)
    idir = ipc_dir(config.group_id)
    mounts = _build_volume_mounts(config, allowlist, gdir, idir)

    container_name = oneshot_container_name(config.group_id)
    container_args = _build_container_args(
        mounts, container_name, config.image, s.container.env_passthrough
    )
    argv = [s.container.runtime_cli, *container_args]

    async with queue.acquire(config.group_id):
        gdir.mkdir(parents=True, exist_ok=True)
        _write_initial_input(input_data, idir / "input")

        worker = WorkerProcess(
            argv,
            container_name=container_name,
            group_id=config.group_id,
            max_output_bytes=config.max_output_bytes,
        )
        logger.info(
            "Spawning container",
            group=config.group_id,
            container=container_name,
            mount_count=len(mounts),
            is_main=config.is_main,
            timeout_secs=config.timeout_secs,
        )

        error: RunError | None = None
        try:
            await worker.start()
            queue.register_process(config.group_id, worker)
            await worker.wait(config.timeout_secs)
        except RunError as exc:
            error = exc
            raise
        finally:
            queue.unregister_process(config.group_id)
            _write_run_log(
                logs_dir=gdir / "logs",
                group_id=config.group_id,
                container_name=container_name,
                input_data=input_data,
                container_args=container_args,
                mounts=mounts,
                output=worker.output,
                duration_ms=worker.duration_ms,
                exit_code=worker.exit_code,
                state=worker.state,
                error=str(error) if error else None,
            )

    raw = worker.output
    if worker.exit_code != 0:
        logger.error(
            "Container exited with error",
            group=config.group_id,
            container=container_name,
            code=worker.exit_code,
            duration_ms=round(worker.duration_ms),
        )
        raise NonZeroExitError(
            worker.exit_code if worker.exit_code is not None else -1,
            raw[-_OUTPUT_TAIL_CHARS:],
        )

    logger.info(
        "Container completed",
        group=config.group_id,
        container=container_name,
        duration_ms=round(worker.duration_ms),
        output_bytes=len(raw),
    )
    return parse_container_output(raw, success=True)
