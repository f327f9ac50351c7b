"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Every value has a safe default.  Environment variables override the files,
either nested with ``__`` (``CONTAINER__IMAGE``) or through the flat names
the service has always accepted (``CONTAINER_IMAGE``, ``CONTAINER_TIMEOUT``,
``SCHEDULER_POLL_INTERVAL``, ...).  A malformed value never aborts startup:
it is logged and replaced by the field default.

Priority (highest wins): init args > nested env vars > flat env vars > .env > config.toml

Usage::

    from nuclaw.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.scheduler.poll_interval)
"""

from __future__ import annotations

import os
import sys
from functools import cached_property
from pathlib import Path
from typing import Any, ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from nuclaw.logger import logger

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _LenientModel(BaseModel):
    """Base for config sections — bad numbers fall back to the field default."""

    model_config = {"extra": "ignore"}

    @classmethod
    def _default_for(cls, field_name: str) -> Any:
        return cls.model_fields[field_name].get_default(call_default_factory=True)

    @classmethod
    def _positive_or_default(cls, value: Any, handler: Any, info: ValidationInfo) -> Any:
        try:
            result = handler(value)
        except ValidationError:
            result = None
        if result is None or result <= 0:
            default = cls._default_for(info.field_name)
            logger.warning(
                "Invalid config value, using default",
                section=cls.__name__,
                field=info.field_name,
                value=value,
                default=default,
            )
            return default
        return result


def _default_runtime_cli() -> str:
    return "container" if sys.platform == "darwin" else "docker"


class ContainerSettings(_LenientModel):
    image: str = "nuclaw-agent:latest"
    timeout_ms: int = 300_000  # 5 minutes
    max_output_bytes: int = 10 * 1024 * 1024  # 10MB
    runtime_cli: str = ""  # empty → platform default
    env_passthrough: list[str] = [
        "ANTHROPIC_API_KEY",
        "ANTHROPIC_BASE_URL",
        "CLAUDE_CODE_OAUTH_TOKEN",
    ]

    @field_validator("timeout_ms", "max_output_bytes", mode="wrap")
    @classmethod
    def _positive(cls, value: Any, handler: Any, info: ValidationInfo) -> Any:
        return cls._positive_or_default(value, handler, info)

    @field_validator("runtime_cli")
    @classmethod
    def _resolve_cli(cls, v: str) -> str:
        return v.strip() or _default_runtime_cli()


class SchedulerSettings(_LenientModel):
    poll_interval: float = 60.0  # seconds
    task_timeout: float = 600.0  # seconds
    max_concurrent: int = 4
    timezone: str = "UTC"

    @field_validator("poll_interval", "task_timeout", "max_concurrent", mode="wrap")
    @classmethod
    def _positive(cls, value: Any, handler: Any, info: ValidationInfo) -> Any:
        return cls._positive_or_default(value, handler, info)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone, using UTC", timezone=v)
            return "UTC"
        return v


# ---------------------------------------------------------------------------
# Flat environment names
# ---------------------------------------------------------------------------


class FlatEnvSettingsSource(PydanticBaseSettingsSource):
    """Map the historical flat env var names onto nested sections."""

    ENV_MAP: ClassVar[dict[str, tuple[str, str]]] = {
        "CONTAINER_IMAGE": ("container", "image"),
        "CONTAINER_TIMEOUT": ("container", "timeout_ms"),
        "CONTAINER_MAX_OUTPUT_SIZE": ("container", "max_output_bytes"),
        "CONTAINER_RUNTIME": ("container", "runtime_cli"),
        "SCHEDULER_POLL_INTERVAL": ("scheduler", "poll_interval"),
        "SCHEDULER_MAX_CONCURRENT": ("scheduler", "max_concurrent"),
        "TASK_TIMEOUT": ("scheduler", "task_timeout"),
        "TZ": ("scheduler", "timezone"),
    }

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, dict[str, str]] = {}
        for env_name, (section, key) in self.ENV_MAP.items():
            value = os.environ.get(env_name)
            if value is not None:
                data.setdefault(section, {})[key] = value
        return data


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerSettings = ContainerSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    mount_allowlist_path: Path | None = None  # MOUNT_ALLOWLIST_PATH

    # Sentinels framing the worker's structured result (class-level, not fields)
    OUTPUT_START_MARKER: ClassVar[str] = "---NUCLAW_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---NUCLAW_OUTPUT_END---"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > flat env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            FlatEnvSettingsSource(settings_cls),
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def allowlist_path(self) -> Path:
        if self.mount_allowlist_path is not None:
            return self.mount_allowlist_path.expanduser()
        return Path.home() / ".config" / "nuclaw" / "mount-allowlist.json"

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
