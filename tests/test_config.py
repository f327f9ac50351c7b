"""Tests for configuration loading.

Settings are built from a temporary working directory so no real
config.toml or .env leaks in; environment variables are set per test.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from nuclaw.config import (
    ContainerSettings,
    FlatEnvSettingsSource,
    SchedulerSettings,
    Settings,
    get_settings,
    reset_settings,
)


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch):
    for name in [*FlatEnvSettingsSource.ENV_MAP, "CONTAINER__IMAGE", "MOUNT_ALLOWLIST_PATH"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestDefaults:
    def test_container_defaults(self, clean_env):
        s = Settings()
        assert s.container.image == "nuclaw-agent:latest"
        assert s.container.timeout_ms == 300_000
        assert s.container.max_output_bytes == 10 * 1024 * 1024
        assert "ANTHROPIC_API_KEY" in s.container.env_passthrough

    def test_scheduler_defaults(self, clean_env):
        s = Settings()
        assert s.scheduler.poll_interval == 60.0
        assert s.scheduler.task_timeout == 600.0
        assert s.scheduler.max_concurrent == 4
        assert s.scheduler.timezone == "UTC"

    def test_paths_relative_to_cwd(self, clean_env):
        s = Settings()
        assert s.groups_dir == (clean_env / "groups").resolve()
        assert s.data_dir == (clean_env / "data").resolve()
        assert s.container_timeout == 300.0

    def test_default_allowlist_outside_project(self, clean_env):
        assert Settings().allowlist_path == (
            Path.home() / ".config" / "nuclaw" / "mount-allowlist.json"
        )

    def test_runtime_cli_follows_platform(self):
        with patch("nuclaw.config.sys.platform", "darwin"):
            assert ContainerSettings().runtime_cli == "container"
        with patch("nuclaw.config.sys.platform", "linux"):
            assert ContainerSettings().runtime_cli == "docker"


class TestEnvironment:
    def test_flat_names(self, clean_env, monkeypatch):
        monkeypatch.setenv("CONTAINER_IMAGE", "custom:1")
        monkeypatch.setenv("CONTAINER_TIMEOUT", "1000")
        monkeypatch.setenv("CONTAINER_MAX_OUTPUT_SIZE", "2048")
        monkeypatch.setenv("SCHEDULER_POLL_INTERVAL", "5")
        monkeypatch.setenv("TASK_TIMEOUT", "30")
        monkeypatch.setenv("TZ", "Europe/Paris")
        s = Settings()
        assert s.container.image == "custom:1"
        assert s.container.timeout_ms == 1000
        assert s.container.max_output_bytes == 2048
        assert s.scheduler.poll_interval == 5.0
        assert s.scheduler.task_timeout == 30.0
        assert s.scheduler.timezone == "Europe/Paris"

    def test_nested_name_wins_over_flat(self, clean_env, monkeypatch):
        monkeypatch.setenv("CONTAINER_IMAGE", "flat:1")
        monkeypatch.setenv("CONTAINER__IMAGE", "nested:1")
        assert Settings().container.image == "nested:1"

    def test_allowlist_path_override(self, clean_env, monkeypatch):
        monkeypatch.setenv("MOUNT_ALLOWLIST_PATH", str(clean_env / "allow.json"))
        assert Settings().allowlist_path == clean_env / "allow.json"


class TestMalformedValues:
    def test_unparseable_timeout_falls_back(self, clean_env, monkeypatch):
        monkeypatch.setenv("CONTAINER_TIMEOUT", "five minutes")
        assert Settings().container.timeout_ms == 300_000

    def test_zero_task_timeout_falls_back(self, clean_env, monkeypatch):
        monkeypatch.setenv("TASK_TIMEOUT", "0")
        assert Settings().scheduler.task_timeout == 600.0

    def test_negative_max_output_falls_back(self):
        assert ContainerSettings(max_output_bytes=-1).max_output_bytes == 10 * 1024 * 1024

    def test_unknown_timezone_falls_back_to_utc(self):
        assert SchedulerSettings(timezone="Mars/Olympus_Mons").timezone == "UTC"


class TestTomlFile:
    def test_reads_sections(self, clean_env):
        (clean_env / "config.toml").write_text(
            '[container]\nimage = "from-toml:2"\ntimeout_ms = 42000\n\n'
            "[scheduler]\nmax_concurrent = 8\n"
        )
        s = Settings()
        assert s.container.image == "from-toml:2"
        assert s.container.timeout_ms == 42000
        assert s.scheduler.max_concurrent == 8

    def test_env_overrides_toml(self, clean_env, monkeypatch):
        (clean_env / "config.toml").write_text('[container]\nimage = "from-toml:2"\n')
        monkeypatch.setenv("CONTAINER_IMAGE", "from-env:3")
        assert Settings().container.image == "from-env:3"


class TestSingleton:
    def test_cached_until_reset(self, clean_env):
        reset_settings()
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first
