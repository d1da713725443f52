"""
Atomic file replacement.

Every document a step writes (records, configs, unit files, state) goes
through ``write_atomic``: the content lands in a temp file in the same
directory, is flushed to disk, and is renamed over the target.  Readers
see either the old file or the new one, never a partial write.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def write_atomic(path: Path, content: str | bytes, mode: int | None = None) -> None:
    """Replace ``path`` with ``content`` in one rename.

    Args:
        path: Target file. Parent directories are created.
        content: Text (UTF-8) or bytes.
        mode: Optional permission bits applied before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    logger.debug("Wrote %s (%d bytes)", path, len(data))


def file_mode(path: Path) -> int | None:
    """Permission bits of ``path``, or None if it does not exist."""
    try:
        return path.stat().st_mode & 0o777
    except FileNotFoundError:
        return None


def matches(path: Path, content: str) -> bool:
    """Whether ``path`` exists and holds exactly ``content``."""
    try:
        return path.read_text(encoding="utf-8") == content
    except (FileNotFoundError, UnicodeDecodeError):
        return False
