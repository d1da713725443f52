"""
NodeRecord persistence — the exported exit node facts.

The record is shared across steps and read by the health checker while a
deployment may still be writing it, so every write is an atomic replace
and every update is a read-modify-write over the whole document.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from exitnode.core.models.record import NodeRecord
from exitnode.core.persistence.atomic import write_atomic

logger = logging.getLogger(__name__)


class RecordError(Exception):
    """Raised when a NodeRecord file exists but cannot be parsed."""


def load_record(path: Path) -> NodeRecord | None:
    """Load the record at ``path``.

    Returns:
        The record, or None if the file does not exist.

    Raises:
        RecordError: If the file is unreadable or not a valid record.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise RecordError(f"Cannot read {path}: {e}") from e

    try:
        return NodeRecord.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        raise RecordError(f"Corrupt node record {path}: {e}") from e


def save_record(record: NodeRecord, path: Path, mode: int = 0o644) -> None:
    """Write ``record`` to ``path`` atomically."""
    content = json.dumps(record.model_dump(mode="json"), indent=2) + "\n"
    write_atomic(path, content, mode=mode)
    logger.debug("Node record saved to %s", path)


def update_record(path: Path, **changes: Any) -> NodeRecord:
    """Apply ``changes`` to the record at ``path`` and save it.

    Raises:
        RecordError: If no record exists or the existing one is corrupt.
    """
    record = load_record(path)
    if record is None:
        raise RecordError(f"No node record at {path}")
    updated = record.model_copy(update=changes)
    # Re-validate so a bad field value cannot reach disk
    updated = NodeRecord.model_validate(updated.model_dump())
    save_record(updated, path)
    return updated
