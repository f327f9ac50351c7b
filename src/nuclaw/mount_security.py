"""Mount security — validates requested host mounts against an allowlist.

The allowlist lives outside the project (``~/.config/nuclaw/mount-allowlist.json``
by default) so an agent running inside a container can never edit it.  It is
loaded once and passed explicitly to every validation call.

Validation order matters: the blocked-pattern check runs before allowlist
membership, so a sensitive directory nested under an allowed root is still
rejected.
"""

from __future__ import annotations

import json
import os
import posixpath
from collections.abc import Iterable
from dataclasses import replace
from pathlib import Path

from nuclaw.errors import (
    BlockedPatternError,
    DuplicateContainerPathError,
    InvalidContainerPathError,
    PathNotAllowedError,
)
from nuclaw.logger import logger
from nuclaw.types import AllowedRoot, MountAllowlist, MountSpec

EXTRA_MOUNT_PREFIX = "/workspace/extra"

DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    ".ssh",
    ".gnupg",
    ".aws",
    ".azure",
    ".gcloud",
    ".kube",
    ".docker",
    "credentials",
    ".env",
    ".netrc",
    ".npmrc",
    "id_rsa",
    "id_ed25519",
    "private_key",
    ".secret",
)


# ---------------------------------------------------------------------------
# Allowlist loading
# ---------------------------------------------------------------------------


def _merge_patterns(custom: Iterable[str]) -> tuple[str, ...]:
    merged = list(DEFAULT_BLOCKED_PATTERNS)
    for pattern in custom:
        if pattern and pattern not in merged:
            merged.append(pattern)
    return tuple(merged)


def empty_allowlist() -> MountAllowlist:
    """Deny-by-default allowlist: no roots, default blocked patterns."""
    return MountAllowlist(allowed_roots=(), blocked_patterns=DEFAULT_BLOCKED_PATTERNS)


def parse_allowlist(data: object) -> MountAllowlist:
    """Build a MountAllowlist from the decoded JSON document.

    Raises ValueError when the document does not have the expected shape.
    """
    if not isinstance(data, dict):
        raise ValueError("allowlist must be a JSON object")

    raw_roots = data.get("allowedRoots", [])
    raw_patterns = data.get("blockedPatterns", [])
    non_main_read_only = data.get("nonMainReadOnly", True)

    if not isinstance(raw_roots, list):
        raise ValueError("allowedRoots must be an array")
    if not isinstance(raw_patterns, list) or not all(isinstance(p, str) for p in raw_patterns):
        raise ValueError("blockedPatterns must be an array of strings")
    if not isinstance(non_main_read_only, bool):
        raise ValueError("nonMainReadOnly must be a boolean")

    roots: list[AllowedRoot] = []
    for entry in raw_roots:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
            raise ValueError(f"invalid allowedRoots entry: {entry!r}")
        roots.append(
            AllowedRoot(
                path=entry["path"],
                allow_read_write=bool(entry.get("allowReadWrite", False)),
                description=entry.get("description"),
            )
        )

    return MountAllowlist(
        allowed_roots=tuple(roots),
        blocked_patterns=_merge_patterns(raw_patterns),
        non_main_read_only=non_main_read_only,
    )


def load_mount_allowlist(path: Path | None = None) -> MountAllowlist:
    """Load the allowlist file.

    A missing file is the normal "no extra mounts" setup and yields the empty
    allowlist.  An unreadable or malformed file is logged and also yields
    the empty allowlist, so extras are denied rather than startup failing.
    """
    if path is None:
        from nuclaw.config import get_settings

        path = get_settings().allowlist_path

    if not path.exists():
        logger.info(
            "Mount allowlist not found, additional mounts will be rejected",
            path=str(path),
        )
        return empty_allowlist()

    try:
        allowlist = parse_allowlist(json.loads(path.read_text()))
    except (OSError, ValueError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.error(
            "Failed to load mount allowlist, additional mounts will be rejected",
            path=str(path),
            error=str(exc),
        )
        return empty_allowlist()

    logger.info(
        "Mount allowlist loaded",
        path=str(path),
        allowed_roots=len(allowlist.allowed_roots),
        blocked_patterns=len(allowlist.blocked_patterns),
        non_main_read_only=allowlist.non_main_read_only,
    )
    return allowlist


def generate_allowlist_template() -> str:
    """Return an example allowlist document for users to copy and edit."""
    template = {
        "allowedRoots": [
            {
                "path": "~/projects",
                "allowReadWrite": True,
                "description": "Development projects",
            },
            {
                "path": "~/Documents/work",
                "allowReadWrite": False,
                "description": "Work documents (read-only)",
            },
        ],
        "blockedPatterns": ["password", "secret", "token"],
        "nonMainReadOnly": True,
    }
    return json.dumps(template, indent=2)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def _expand_path(p: str) -> str:
    """Expand ~ and make the path absolute without requiring it to exist."""
    return os.path.abspath(os.path.expanduser(p))


def _resolve_path(p: str) -> str:
    """Absolute path with symlinks resolved where they exist."""
    return os.path.realpath(_expand_path(p))


def _matches_blocked_pattern(real_path: str, patterns: Iterable[str]) -> str | None:
    """Return the first pattern found (case-insensitively) anywhere in the path."""
    lowered = real_path.lower()
    for pattern in patterns:
        if pattern and pattern.lower() in lowered:
            return pattern
    return None


def _is_under(path: str, root: str) -> bool:
    if path == root:
        return True
    return path.startswith(root.rstrip(os.sep) + os.sep)


def _find_allowed_root(real_path: str, roots: Iterable[AllowedRoot]) -> AllowedRoot | None:
    for root in roots:
        if _is_under(real_path, _resolve_path(root.path)):
            return root
    return None


def _resolve_container_path(mount: MountSpec, real_host_path: str) -> str:
    """Normalise the in-container path; relative paths land under /workspace/extra."""
    raw = mount.container_path
    if raw is None:
        raw = os.path.basename(real_host_path.rstrip(os.sep))
    raw = raw.strip()
    if not raw or ".." in raw.split("/"):
        raise InvalidContainerPathError(
            mount.host_path, f"Invalid container path {mount.container_path!r}"
        )
    if not raw.startswith("/"):
        raw = f"{EXTRA_MOUNT_PREFIX}/{raw}"
    normalized = posixpath.normpath(raw)
    if normalized == "/":
        raise InvalidContainerPathError(mount.host_path, "container path cannot be /")
    return normalized


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_mount(
    mount: MountSpec,
    allowlist: MountAllowlist,
    *,
    is_primary: bool = False,
    is_main: bool = False,
) -> MountSpec:
    """Validate one mount request and return its accepted, normalised form.

    Args:
        mount: The requested mount.
        allowlist: The loaded policy.
        is_primary: True for the group's own working directory, which does
            not need an allowed root and keeps its requested mode.
        is_main: True for the main (admin) group, whose extras may be
            read-write even when ``non_main_read_only`` is set.

    Raises:
        BlockedPatternError, InvalidContainerPathError, PathNotAllowedError.
    """
    real_path = _resolve_path(mount.host_path)

    blocked = _matches_blocked_pattern(real_path, allowlist.blocked_patterns)
    if blocked is not None:
        raise BlockedPatternError(mount.host_path, blocked)

    container_path = _resolve_container_path(mount, real_path)

    if is_primary:
        return replace(mount, host_path=real_path, container_path=container_path)

    if container_path == EXTRA_MOUNT_PREFIX or not _is_under(container_path, EXTRA_MOUNT_PREFIX):
        raise InvalidContainerPathError(
            mount.host_path,
            f"Invalid container path {container_path}: must be under {EXTRA_MOUNT_PREFIX}/",
        )

    if allowlist.is_empty:
        raise PathNotAllowedError(mount.host_path, "No mount allowlist configured")

    root = _find_allowed_root(real_path, allowlist.allowed_roots)
    if root is None:
        roots = ", ".join(_expand_path(r.path) for r in allowlist.allowed_roots)
        raise PathNotAllowedError(
            mount.host_path, f"Path is not under any allowed root. Allowed roots: {roots}"
        )

    readonly = True
    if not mount.readonly:
        if not root.allow_read_write:
            logger.info(
                "Mount forced to read-only, root does not allow read-write",
                host_path=real_path,
                root=root.path,
            )
        elif allowlist.non_main_read_only and not is_main:
            logger.info(
                "Mount forced to read-only for non-main group",
                host_path=real_path,
            )
        else:
            readonly = False

    return MountSpec(
        host_path=real_path,
        container_path=container_path,
        readonly=readonly,
        description=mount.description or root.description,
    )


def validate_mounts(
    requested: Iterable[MountSpec],
    allowlist: MountAllowlist,
    *,
    primary_index: int | None = None,
    is_main: bool = False,
) -> list[MountSpec]:
    """Validate a full mount set; the first rejection fails the whole set.

    Only the mount at *primary_index* is treated as the group's own working
    directory; every other entry is an extra, whatever its host path.
    Order is preserved, so re-validating the returned list with the same
    *primary_index* yields the same list.
    """
    accepted: list[MountSpec] = []
    seen: dict[str, str] = {}

    for index, mount in enumerate(requested):
        is_primary = index == primary_index
        try:
            validated = validate_mount(mount, allowlist, is_primary=is_primary, is_main=is_main)
        except (BlockedPatternError, PathNotAllowedError, InvalidContainerPathError) as exc:
            logger.warning(
                "Mount rejected",
                host_path=mount.host_path,
                kind=exc.kind,
                reason=exc.reason,
            )
            raise

        assert validated.container_path is not None
        if validated.container_path in seen:
            raise DuplicateContainerPathError(
                mount.host_path,
                f"container path {validated.container_path} already used by "
                f"{seen[validated.container_path]}",
            )
        seen[validated.container_path] = validated.host_path
        accepted.append(validated)

    return accepted
