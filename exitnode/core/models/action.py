"""
Action and Receipt models — the command contract.

Steps never shell out on their own. They describe each external call
(apt-get, go, systemctl, cloudflared, a download) as an Action, the
adapter registry dispatches it, and the adapter answers with a Receipt.
Adapters report failures inside the Receipt; they do not raise.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class Action(BaseModel):
    """An external operation requested by a provisioning step."""

    id: str                          # "<operation>:<step>:<seq>"
    adapter: str                     # "shell", "http"
    params: dict[str, Any] = Field(default_factory=dict)
    for_step: str | None = None      # None = outside any step (pre-flight, health)

    @property
    def summary(self) -> str:
        """One-line rendering used in logs, run log and error messages."""
        argv = self.params.get("argv")
        if argv:
            return " ".join(str(part) for part in argv)
        url = self.params.get("url")
        if url:
            return f"download {url} -> {self.params.get('dest', '?')}"
        return self.id


class Receipt(BaseModel):
    """Result of an adapter execution."""

    adapter: str
    action_id: str
    status: Literal["ok", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None
    return_code: int | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the action succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the action failed."""
        return self.status == "failed"

    @property
    def diagnostics(self) -> str:
        """Everything the external tool said, error text first."""
        parts = [p for p in (self.error, self.output) if p]
        return "\n".join(parts)

    @classmethod
    def success(
        cls,
        adapter: str,
        action_id: str,
        output: str = "",
        **kwargs: Any,
    ) -> Receipt:
        """Create a success receipt."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="ok",
            output=output,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        adapter: str,
        action_id: str,
        error: str,
        **kwargs: Any,
    ) -> Receipt:
        """Create a failure receipt."""
        return cls(
            adapter=adapter,
            action_id=action_id,
            status="failed",
            error=error,
            **kwargs,
        )
