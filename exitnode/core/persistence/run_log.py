"""
Run log — append-only record of every pipeline transition.

Each event is one JSON line.  The file is never rewritten; a run that
crashes half way still leaves every transition up to the crash on disk.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RunLogEntry(BaseModel):
    """A single run log event."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    step: str = ""
    event: str = ""                # step_start, step_ok, step_skipped, command, ...
    status: str = ""
    message: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


def default_run_log_path(directory: Path, kind: str) -> Path:
    """``<directory>/xray-exit-<kind>-<timestamp>.ndjson``"""
    stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return directory / f"xray-exit-{kind}-{stamp}.ndjson"


class RunLogWriter:
    """Append-only NDJSON writer."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: RunLogEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Failed to write run log entry: %s", e)

    def read_all(self) -> list[RunLogEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(RunLogEntry.model_validate(json.loads(line)))
                except Exception as e:
                    logger.warning("Skipping corrupt run log line %d: %s", line_num, e)
        return entries

    def read_recent(self, n: int = 20) -> list[RunLogEntry]:
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        if not self._path.is_file():
            return 0
        with self._path.open("r", encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())
