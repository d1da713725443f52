"""
Host helpers — users, ownership, architecture and disk space.

Thin wrappers over ``id``/``useradd``/``userdel``/``chown``/``uname``
issued through the command runner.  All of them are idempotent.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path

from exitnode.core.engine.commands import CommandRunner

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+)\.(\d+)")

ARM64_ARCHES = ("aarch64", "arm64")
ARM32_ARCHES = ("armv7l", "armhf")


# ── Users ───────────────────────────────────────────────────────


def user_exists(commands: CommandRunner, user: str) -> bool:
    return commands.succeeds(["id", "-u", user])


def ensure_system_user(commands: CommandRunner, user: str) -> bool:
    """Create a no-login system user. Returns True if it was created."""
    if user_exists(commands, user):
        logger.debug("User %s already exists", user)
        return False
    commands.run(
        ["useradd", "--system", "--no-create-home", "--shell", "/usr/sbin/nologin", user]
    )
    logger.info("Created system user %s", user)
    return True


def remove_user(commands: CommandRunner, user: str) -> bool:
    """Delete a user if present. Returns True if it was removed."""
    if not user_exists(commands, user):
        return False
    commands.run(["userdel", user])
    logger.info("Removed user %s", user)
    return True


def chown(
    commands: CommandRunner,
    owner: str,
    group: str,
    *paths: Path,
    recursive: bool = False,
) -> None:
    argv: list[str | Path] = ["chown"]
    if recursive:
        argv.append("-R")
    argv.append(f"{owner}:{group}")
    argv.extend(paths)
    commands.run(argv)


# ── Platform ────────────────────────────────────────────────────


def detect_arch(commands: CommandRunner) -> str:
    """Machine hardware name from ``uname -m``."""
    return (commands.output(["uname", "-m"]) or "").strip()


def parse_version(text: str) -> tuple[int, int] | None:
    """First ``major.minor`` pair in ``text``."""
    match = _VERSION_RE.search(text)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def version_at_least(found: tuple[int, int] | None, minimum: str) -> bool:
    """Numeric major.minor comparison (1.9 < 1.21)."""
    required = parse_version(minimum)
    if found is None or required is None:
        return False
    return found >= required


def free_mb(path: Path) -> int:
    """Free space in MB on the filesystem holding ``path`` (or its nearest existing parent)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free // (1024 * 1024)


def is_root() -> bool:
    return os.geteuid() == 0
