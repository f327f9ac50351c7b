"""Shared test fixtures for nuclaw."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "groups_dir",
        "data_dir",
        "allowlist_path",
        "container_timeout",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (container, scheduler, ...) and cached property
    overrides (project_root, data_dir, groups_dir, ...).

    Usage::

        s = make_settings(data_dir=tmp_path / "data", groups_dir=tmp_path / "groups")
        s = make_settings(container=ContainerSettings(runtime_cli=str(fake_cli)))
    """
    from nuclaw.config import ContainerSettings, SchedulerSettings, Settings

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "container": ContainerSettings(runtime_cli="docker"),
        "scheduler": SchedulerSettings(),
        "mount_allowlist_path": None,
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def write_fake_cli(path: Path, body: str) -> Path:
    """Write an executable shell script standing in for the container runtime CLI.

    ``<cli> rm -f <name>`` always succeeds; ``<cli> run ...`` executes *body*.
    """
    path.write_text(
        "#!/bin/sh\n"
        'case "$1" in\n'
        "  rm) exit 0 ;;\n"
        "esac\n"
        f"{body}\n"
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O.
    """
    safe = make_settings()
    monkeypatch.setattr("nuclaw.config._settings", safe)


@pytest.fixture(autouse=True)
def _no_passthrough_env(monkeypatch):
    """Keep host credentials out of container args built during tests."""
    for var in ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "CLAUDE_CODE_OAUTH_TOKEN"):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point groups/ and data/ at a temporary project root."""
    root = tmp_path / "proj"
    root.mkdir()
    s = make_settings(
        project_root=root,
        groups_dir=root / "groups",
        data_dir=root / "data",
    )
    monkeypatch.setattr("nuclaw.config._settings", s)
    return root


@pytest.fixture
async def store():
    from nuclaw.state import SqliteTaskStore

    st = await SqliteTaskStore.open(":memory:")
    yield st
    await st.close()
