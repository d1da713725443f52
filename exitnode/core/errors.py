"""
Step failure taxonomy.

Every fatal condition inside a step is a StepError subclass. The runner
turns it into a failed StepOutcome and halts; nothing is retried.
Soft failures never raise; steps report them with ``session.warn``.
"""

from __future__ import annotations


class StepError(Exception):
    """A step could not complete.

    Attributes:
        step: Name of the failing step.
        operation: The operation in progress (usually the external command).
        detail: Tool output, log excerpt or remediation text for the operator.
    """

    label = "Step failed"

    def __init__(self, step: str, message: str, *, operation: str = "", detail: str = ""):
        super().__init__(message)
        self.step = step
        self.message = message
        self.operation = operation
        self.detail = detail


class PreconditionError(StepError):
    """An artifact from an earlier step is missing."""

    label = "Precondition failed"


class ExternalToolError(StepError):
    """An external command or download failed."""

    label = "External tool failed"

    def __init__(
        self,
        step: str,
        message: str,
        *,
        operation: str = "",
        detail: str = "",
        return_code: int | None = None,
    ):
        super().__init__(step, message, operation=operation, detail=detail)
        self.return_code = return_code


class DocumentValidationError(StepError):
    """A rendered configuration was rejected by the binary that consumes it."""

    label = "Validation failed"


class VerificationError(StepError):
    """A postcondition did not hold after the step's effect ran."""

    label = "Verification failed"


class MissingCredentialError(StepError):
    """The step needs the external API credential and it is not set."""

    label = "Missing credential"


class UnsupportedPlatformError(StepError):
    """The host architecture has no matching release artifact."""

    label = "Unsupported platform"
