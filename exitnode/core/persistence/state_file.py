"""
Deployment state file — which pipeline state the node has reached.

Stored as JSON under ``<install_dir>/var/state.json``.  Writes are atomic
so a crash mid-step leaves the previous state intact, and the next run
resumes from it.  A missing or unreadable file means a fresh deployment.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from exitnode.core.models.pipeline import PipelineState
from exitnode.core.persistence.atomic import write_atomic

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class StepRecord(BaseModel):
    """Last known outcome of one step."""

    status: str = ""
    at: str = Field(default_factory=_now_iso)
    operation_id: str = ""


class DeploymentState(BaseModel):
    """Persisted pipeline progress."""

    schema_version: int = SCHEMA_VERSION
    state: PipelineState = PipelineState.NOT_STARTED
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    last_operation: str = ""
    last_status: str = ""
    updated_at: str = Field(default_factory=_now_iso)

    def advance(self, state: PipelineState) -> None:
        """Move forward to ``state``. Never moves backwards."""
        if not self.state.reached(state):
            self.state = state

    def mark(self, step: str, status: str, operation_id: str) -> None:
        self.steps[step] = StepRecord(status=status, operation_id=operation_id)

    def touch(self) -> None:
        self.updated_at = _now_iso()


def load_state(path: Path) -> DeploymentState:
    """Load the deployment state. Missing or corrupt files give a fresh state."""
    if not path.is_file():
        logger.info("No state file at %s, starting fresh", path)
        return DeploymentState()

    try:
        state = DeploymentState.model_validate(json.loads(path.read_text(encoding="utf-8")))
        logger.debug("Loaded state from %s (%s)", path, state.state.value)
        return state
    except json.JSONDecodeError as e:
        logger.warning("Corrupt state file %s: %s, starting fresh", path, e)
        return DeploymentState()
    except Exception as e:
        logger.warning("Cannot load state from %s: %s, starting fresh", path, e)
        return DeploymentState()


def save_state(state: DeploymentState, path: Path) -> None:
    """Save the deployment state (atomic write)."""
    state.touch()
    content = json.dumps(state.model_dump(mode="json"), indent=2) + "\n"
    write_atomic(path, content)
    logger.debug("State saved to %s (%s)", path, state.state.value)
