"""Run log file writing."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

from nuclaw.container_runner._serialization import _input_to_dict
from nuclaw.types import ContainerInput, MountSpec


def _write_run_log(
    *,
    logs_dir: Path,
    group_id: str,
    container_name: str,
    input_data: ContainerInput,
    container_args: list[str],
    mounts: list[MountSpec],
    output: str,
    duration_ms: float,
    exit_code: int | None,
    state: str,
    error: str | None = None,
) -> Path:
    """Write a timestamped log file for a container run and return its path."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(UTC)
    ts = now.isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"container-{ts}.log"

    lines = [
        f"=== Container Run Log ({state.upper()}) ===",
        f"Timestamp: {now.isoformat()}",
        f"Group: {group_id}",
        f"Container: {container_name}",
        f"Duration: {duration_ms:.0f}ms",
        f"Exit Code: {exit_code}",
    ]
    if error:
        lines.append(f"Error: {error}")
    lines.append("")

    is_verbose = os.environ.get("LOG_LEVEL", "").lower() in ("debug", "trace")
    if is_verbose or state != "completed":
        lines.extend(
            [
                "=== Input ===",
                json.dumps(_input_to_dict(input_data), indent=2),
                "",
                "=== Container Args ===",
                " ".join(container_args),
                "",
                "=== Mounts ===",
                "\n".join(
                    f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                    for m in mounts
                ),
                "",
                "=== Output ===",
                output,
            ]
        )
    else:
        lines.extend(
            [
                "=== Input Summary ===",
                f"Prompt length: {len(input_data.prompt)} chars",
                f"Session ID: {input_data.session_id or 'new'}",
                "",
                "=== Mounts ===",
                "\n".join(f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts),
                "",
            ]
        )

    log_file.write_text("\n".join(lines))
    return log_file
