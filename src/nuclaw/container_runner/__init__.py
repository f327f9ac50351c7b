"""Container runner — runs one agent invocation in an isolated container.

Validates mounts, writes the initial input as an IPC file (initial.json),
spawns the runtime CLI under the group's execution token, enforces the
wall-clock timeout and output bound, writes a run log, and decodes the
marker-framed result.

This package is split into focused submodules:
  _serialization  — JSON boundary crossing (ContainerInput -> dict, output parsing)
  _mounts         — Volume mount list and container arg construction
  _process        — WorkerProcess: bounded capture, timeout, tree kill
  _logging        — Run log file writing
  _orchestrator   — Main entry point (run_container)
"""

from nuclaw.container_runner._orchestrator import (
    oneshot_container_name,
    run_container,
    validate_group_id,
)
from nuclaw.container_runner._process import WorkerProcess
from nuclaw.container_runner._serialization import parse_container_output

__all__ = [
    "WorkerProcess",
    "oneshot_container_name",
    "parse_container_output",
    "run_container",
    "validate_group_id",
]
