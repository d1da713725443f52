"""
Pipeline models — explicit deployment state and per-step outcomes.

The deployment is a linear state machine. Each step declares the state
it needs on entry and the state it leaves behind, so "which earlier
steps succeeded" is a persisted fact instead of something re-derived
from filesystem probing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class PipelineState(str, Enum):
    """How far the node has converged, in pipeline order."""

    NOT_STARTED = "not_started"
    SYSTEM_PREPARED = "system_prepared"
    DEPENDENCIES_INSTALLED = "dependencies_installed"
    BUILT = "built"
    CONFIGURED = "configured"
    TUNNEL_DAEMON_INSTALLED = "tunnel_daemon_installed"
    TUNNEL_PROVISIONED = "tunnel_provisioned"
    SERVICES_ACTIVE = "services_active"

    @property
    def rank(self) -> int:
        return _ORDER.index(self)

    def reached(self, other: PipelineState) -> bool:
        """Whether this state is at or beyond ``other``."""
        return self.rank >= other.rank

    @property
    def produced_by(self) -> str | None:
        """Name of the deploy step that leads into this state."""
        return _PRODUCED_BY.get(self)


_ORDER = list(PipelineState)

_PRODUCED_BY = {
    PipelineState.SYSTEM_PREPARED: "system-prepare",
    PipelineState.DEPENDENCIES_INSTALLED: "install-deps",
    PipelineState.BUILT: "build-xray",
    PipelineState.CONFIGURED: "configure-xray",
    PipelineState.TUNNEL_DAEMON_INSTALLED: "install-cloudflared",
    PipelineState.TUNNEL_PROVISIONED: "configure-tunnel",
    PipelineState.SERVICES_ACTIVE: "enable-services",
}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


StepStatus = Literal["ok", "skipped", "failed", "cancelled"]


class StepOutcome(BaseModel):
    """What happened to one step during a run."""

    step: str
    title: str = ""
    status: StepStatus = "ok"
    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    message: str = ""
    operation: str = ""              # last external command the step issued
    detail: str = ""                 # tool output, log excerpt, remediation
    warnings: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in ("ok", "skipped")


@dataclass
class PipelineResult:
    """Ordered record of a pipeline run."""

    operation_id: str = ""
    kind: str = "deploy"
    outcomes: list[StepOutcome] = field(default_factory=list)
    final_state: PipelineState | None = None
    run_log: Path | None = None
    started_at: str = field(default_factory=_now_iso)
    ended_at: str = ""

    @property
    def failure(self) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.status == "failed":
                return outcome
        return None

    @property
    def cancelled(self) -> bool:
        return any(o.status == "cancelled" for o in self.outcomes)

    @property
    def status(self) -> str:
        if self.failure is not None:
            return "failed"
        if self.cancelled:
            return "cancelled"
        return "ok"

    @property
    def executed(self) -> list[str]:
        return [o.step for o in self.outcomes if o.status == "ok"]

    @property
    def skipped(self) -> list[str]:
        return [o.step for o in self.outcomes if o.status == "skipped"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "status": self.status,
            "final_state": self.final_state.value if self.final_state else None,
            "run_log": str(self.run_log) if self.run_log else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "steps": [o.model_dump(mode="json") for o in self.outcomes],
        }
