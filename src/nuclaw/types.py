"""Data models for nuclaw."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

ScheduleType = Literal["cron", "interval", "once"]


@dataclass(frozen=True)
class MountSpec:
    host_path: str  # Absolute path or ~ for home
    container_path: str | None = None  # Defaults to basename of host_path
    readonly: bool = True  # Default: true for safety
    description: str | None = None


@dataclass(frozen=True)
class AllowedRoot:
    path: str  # Absolute path or ~ for home
    allow_read_write: bool = False
    description: str | None = None


@dataclass(frozen=True)
class MountAllowlist:
    allowed_roots: tuple[AllowedRoot, ...] = ()
    blocked_patterns: tuple[str, ...] = ()
    non_main_read_only: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.allowed_roots


@dataclass
class ContainerConfig:
    """Per-invocation container settings for one group."""

    group_id: str
    image: str
    timeout_ms: int
    max_output_bytes: int
    extra_mounts: list[MountSpec] = field(default_factory=list)
    is_main: bool = False

    @property
    def timeout_secs(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def for_group(
        cls,
        group_id: str,
        *,
        extra_mounts: list[MountSpec] | None = None,
        is_main: bool = False,
        timeout_ms: int | None = None,
    ) -> ContainerConfig:
        """Build the config from Settings defaults plus group-specific extras."""
        from nuclaw.config import get_settings

        c = get_settings().container
        return cls(
            group_id=group_id,
            image=c.image,
            timeout_ms=timeout_ms if timeout_ms is not None else c.timeout_ms,
            max_output_bytes=c.max_output_bytes,
            extra_mounts=list(extra_mounts or []),
            is_main=is_main,
        )


@dataclass
class ContainerInput:
    prompt: str
    session_id: str | None = None
    group_context_path: str = "/workspace/group"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContainerOutput:
    status: Literal["success", "error"]
    text: str | None = None
    session_id: str | None = None
    raw: str = ""


@dataclass
class ScheduledTask:
    id: str
    group_id: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    enabled: bool = True
    created_at: datetime | None = None


@dataclass
class TaskRunLog:
    task_id: str
    started_at: datetime
    finished_at: datetime
    outcome: str  # "success" or an error kind (see nuclaw.errors)
    output_excerpt: str | None = None

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at).total_seconds() * 1000
