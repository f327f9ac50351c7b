"""Startup checks for the container runtime.

Docker is probed with ``docker info``.  Apple's ``container`` CLI is probed
with ``container system status`` and started once if it is down.  Workers
left over from a previous process are force-removed so none outlive the
service that spawned them.
"""

from __future__ import annotations

import contextlib
import os
import subprocess

from nuclaw.config import get_settings
from nuclaw.errors import ContainerSystemError
from nuclaw.logger import logger

_PROBE_TIMEOUT = 15.0
_CONTAINER_PREFIX = "nuclaw-"


def _run(argv: list[str]) -> subprocess.CompletedProcess[str] | None:
    """Run a runtime CLI command; None when the CLI is missing or hangs."""
    try:
        return subprocess.run(argv, capture_output=True, text=True, timeout=_PROBE_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Runtime command failed", argv=argv, err=str(exc))
        return None


def _is_apple_container(cli: str) -> bool:
    return os.path.basename(cli) == "container"


def _ensure_running(cli: str) -> None:
    if _is_apple_container(cli):
        status = _run([cli, "system", "status"])
        if status is not None and status.returncode == 0:
            return
        logger.info("Container system not running, starting it", cli=cli)
        started = _run([cli, "system", "start"])
        if started is None or started.returncode != 0:
            raise ContainerSystemError(
                f"Failed to start container system with '{cli} system start'"
            )
        return

    info = _run([cli, "info"])
    if info is None:
        raise ContainerSystemError(f"Container runtime '{cli}' not found or not responding")
    if info.returncode != 0:
        raise ContainerSystemError(
            f"Container runtime '{cli}' is not running: {info.stderr.strip()[:200]}"
        )


def _list_orphans(cli: str) -> list[str]:
    if _is_apple_container(cli):
        return []
    result = _run([cli, "ps", "--filter", f"name={_CONTAINER_PREFIX}", "--format", "{{.Names}}"])
    if result is None or result.returncode != 0:
        return []
    return [name for name in result.stdout.split() if name.startswith(_CONTAINER_PREFIX)]


def ensure_container_system_running() -> None:
    """Verify the runtime is reachable and remove orphaned workers.

    Raises ContainerSystemError when the runtime is missing or down.
    """
    cli = get_settings().container.runtime_cli
    _ensure_running(cli)
    logger.debug("Container runtime is running", cli=cli)

    orphans = _list_orphans(cli)
    for name in orphans:
        with contextlib.suppress(OSError, subprocess.SubprocessError):
            subprocess.run([cli, "rm", "-f", name], capture_output=True, timeout=_PROBE_TIMEOUT)
    if orphans:
        logger.info("Removed orphaned containers", count=len(orphans), names=orphans)
