"""
Step — the unit of provisioning work.

A step declares the PipelineState it needs and the one it produces, an
idempotency predicate that probes the real artifacts, preconditions, an
effect and a postcondition.  Running a step whose ``is_done`` holds is a
no-op; only steps flagged ``destructive_rerun`` lose anything when forced.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from exitnode.core.errors import PreconditionError, VerificationError
from exitnode.core.models.pipeline import PipelineState

if TYPE_CHECKING:
    from exitnode.core.engine.session import Session


class Step(ABC):
    """Base class for deploy and teardown steps."""

    name: ClassVar[str]
    title: ClassVar[str]
    order: ClassVar[int]
    requires: ClassVar[PipelineState] = PipelineState.NOT_STARTED
    produces: ClassVar[PipelineState] = PipelineState.NOT_STARTED
    destructive_rerun: ClassVar[bool] = False
    done_message: ClassVar[str] = "Done"

    @property
    def rerun_prompt(self) -> str:
        return f"Re-running {self.name} destroys its current result. Continue?"

    def is_done(self, session: Session) -> bool:
        """Whether the step's end state already holds."""
        return False

    def has_state_to_lose(self, session: Session) -> bool:
        """Whether a forced run would destroy something. Only asked of destructive steps."""
        return self.is_done(session)

    def check_preconditions(self, session: Session) -> None:
        """Raise PreconditionError if an earlier artifact is missing."""

    @abstractmethod
    def apply(self, session: Session) -> None:
        """Perform the step's effect."""

    def verify(self, session: Session) -> None:
        """Raise VerificationError if the effect did not take."""

    # ── Helpers ─────────────────────────────────────────────────

    def require(self, condition: bool, message: str, earlier: str) -> None:
        if not condition:
            raise PreconditionError(self.name, message, detail=f"Run 'exitnode step {earlier}' first.")

    def require_file(self, path: Path, earlier: str, executable: bool = False) -> None:
        ok = path.is_file() and (not executable or _is_executable(path))
        what = "Executable" if executable else "File"
        self.require(ok, f"{what} not found: {path}", earlier)

    def check(self, condition: bool, message: str, detail: str = "") -> None:
        if not condition:
            raise VerificationError(self.name, message, detail=detail)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name!r}>"


def _is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & 0o111)
