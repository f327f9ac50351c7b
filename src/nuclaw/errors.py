"""Error taxonomy for the execution core.

Every error carries a stable ``kind`` string.  The scheduler stores it as
the outcome of a TaskRunLog so run history can be filtered by failure type
without parsing messages.
"""

from __future__ import annotations


class NuclawError(Exception):
    kind = "error"


# ---------------------------------------------------------------------------
# Mount validation
# ---------------------------------------------------------------------------


class MountValidationError(NuclawError):
    kind = "mount_rejected"

    def __init__(self, host_path: str, reason: str) -> None:
        super().__init__(f"Mount rejected for {host_path}: {reason}")
        self.host_path = host_path
        self.reason = reason


class PathNotAllowedError(MountValidationError):
    kind = "path_not_allowed"


class BlockedPatternError(MountValidationError):
    kind = "blocked_pattern"

    def __init__(self, host_path: str, pattern: str) -> None:
        super().__init__(host_path, f'path matches blocked pattern "{pattern}"')
        self.pattern = pattern


class InvalidContainerPathError(MountValidationError):
    kind = "invalid_container_path"


class DuplicateContainerPathError(MountValidationError):
    kind = "duplicate_container_path"


# ---------------------------------------------------------------------------
# Container runs
# ---------------------------------------------------------------------------


class RunError(NuclawError):
    kind = "run_error"


class ContainerTimeoutError(RunError):
    kind = "timeout"

    def __init__(self, timeout_secs: float) -> None:
        super().__init__(f"Container timed out after {timeout_secs:.1f}s")
        self.timeout_secs = timeout_secs


class OutputTooLargeError(RunError):
    kind = "output_too_large"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Container output exceeded {limit} bytes")
        self.limit = limit


class SpawnFailedError(RunError):
    kind = "spawn_failed"


class NonZeroExitError(RunError):
    kind = "non_zero_exit"

    def __init__(self, exit_code: int, output_tail: str) -> None:
        super().__init__(f"Container exited with code {exit_code}: {output_tail}")
        self.exit_code = exit_code
        self.output_tail = output_tail


# ---------------------------------------------------------------------------
# Output framing
# ---------------------------------------------------------------------------


class ParseError(NuclawError):
    kind = "parse_error"


class MissingMarkerError(ParseError):
    kind = "missing_marker"


class ReversedMarkerError(ParseError):
    kind = "reversed_marker"


class DuplicateMarkerError(ParseError):
    kind = "duplicate_marker"


class InvalidPayloadError(ParseError):
    kind = "invalid_payload"

    def __init__(self, payload: str, reason: str) -> None:
        super().__init__(f"Invalid output payload ({reason}): {payload[:200]!r}")
        self.payload = payload
        self.reason = reason


# ---------------------------------------------------------------------------
# Scheduling and storage
# ---------------------------------------------------------------------------


class StorageError(NuclawError):
    kind = "storage_error"


class InvalidScheduleError(NuclawError):
    kind = "invalid_schedule"

    def __init__(self, schedule_type: str, schedule_value: str, reason: str) -> None:
        super().__init__(f"Invalid {schedule_type} schedule {schedule_value!r}: {reason}")
        self.schedule_type = schedule_type
        self.schedule_value = schedule_value
        self.reason = reason


class ExecutionTokenError(NuclawError):
    """The per-group execution token could not be acquired.

    Signals a stuck worker or a bug, never a condition to retry.
    """

    kind = "execution_token"


class QueueShutdownError(NuclawError):
    """The group queue is shutting down and no longer hands out tokens."""

    kind = "shutdown"


class ContainerSystemError(NuclawError):
    """The container runtime is missing or could not be started."""

    kind = "container_system"
