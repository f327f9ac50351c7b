"""Volume mount list construction and container CLI arg building."""

from __future__ import annotations

import os
from pathlib import Path

from nuclaw.mount_security import validate_mounts
from nuclaw.types import ContainerConfig, MountAllowlist, MountSpec

GROUP_CONTAINER_PATH = "/workspace/group"
IPC_CONTAINER_PATH = "/workspace/ipc"


def _build_volume_mounts(
    config: ContainerConfig,
    allowlist: MountAllowlist,
    group_dir: Path,
    ipc_dir: Path,
) -> list[MountSpec]:
    """Build the mount list for a container invocation.

    The group's working directory is the primary mount and is always
    read-write.  Extras requested in *config* go through the allowlist and
    must land under /workspace/extra, even when they name the group
    directory, so nothing can shadow the primary or IPC mounts;
    any rejection propagates and nothing is spawned.  The IPC directory
    is owned by the host and appended after validation.
    """
    primary = MountSpec(
        host_path=str(group_dir),
        container_path=GROUP_CONTAINER_PATH,
        readonly=False,
        description="group working directory",
    )
    mounts = validate_mounts(
        [primary, *config.extra_mounts],
        allowlist,
        primary_index=0,
        is_main=config.is_main,
    )
    mounts.append(
        MountSpec(
            host_path=str(ipc_dir),
            container_path=IPC_CONTAINER_PATH,
            readonly=False,
            description="IPC channel",
        )
    )
    return mounts


def _build_container_args(
    mounts: list[MountSpec],
    container_name: str,
    image: str,
    env_passthrough: list[str],
) -> list[str]:
    """Build CLI args for `<runtime> run`."""
    # --rm: one-shot workers; a killed worker is also removed explicitly.
    args = ["run", "--rm", "--name", container_name]

    # Only forward variables that are actually set on the host.
    for name in env_passthrough:
        if os.environ.get(name):
            args.extend(["-e", name])

    for m in mounts:
        if m.readonly:
            args.extend(
                [
                    "--mount",
                    f"type=bind,source={m.host_path},target={m.container_path},readonly",
                ]
            )
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])
    args.append(image)
    return args
