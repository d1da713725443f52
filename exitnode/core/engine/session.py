"""
Session — what a provisioning step is allowed to touch.

Bundles the immutable Context with the command runner, the run log, the
operator confirmation callback and a sleep function.  Tests swap the
last two for scripted answers and a no-op.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from exitnode.adapters.registry import AdapterRegistry
from exitnode.core.context import Context
from exitnode.core.engine.commands import CommandRunner
from exitnode.core.persistence.run_log import RunLogEntry, RunLogWriter, default_run_log_path

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"


def deny(question: str) -> bool:
    """Confirmation callback for unattended runs: answers no."""
    logger.info("No operator to confirm %r, declining", question)
    return False


@dataclass
class Session:
    """Per-run bundle handed to every step."""

    context: Context
    commands: CommandRunner
    run_log: RunLogWriter | None = None
    operation_id: str = ""
    confirm: Confirm = deny
    sleep: Callable[[float], None] = time.sleep
    warnings: list[str] = field(default_factory=list)
    step_warnings: list[str] = field(default_factory=list)
    current_step: str | None = None
    forced: bool = False

    def begin_step(self, name: str | None, forced: bool = False) -> None:
        self.current_step = name
        self.forced = forced
        self.commands.step = name
        self.step_warnings = []

    def warn(self, message: str) -> None:
        """Record a soft failure. The pipeline continues."""
        logger.warning("⚠ %s", message)
        self.warnings.append(message)
        self.step_warnings.append(message)
        self.log_event("warning", status="warning", message=message)

    def log_event(self, event: str, status: str = "", message: str = "", **context: Any) -> None:
        """Append an event to the run log (no-op without one)."""
        if self.run_log is None:
            return
        self.run_log.write(
            RunLogEntry(
                operation_id=self.operation_id,
                step=self.current_step or "",
                event=event,
                status=status,
                message=message,
                context=context,
            )
        )

    @property
    def run_log_path(self) -> Path | None:
        return self.run_log.path if self.run_log is not None else None


def create_session(
    context: Context,
    registry: AdapterRegistry,
    kind: str = "deploy",
    confirm: Confirm = deny,
    sleep: Callable[[float], None] = time.sleep,
    run_log_path: Path | None = None,
) -> Session:
    """Build a Session with a fresh operation id and run log."""
    operation_id = generate_operation_id()
    path = run_log_path or default_run_log_path(context.path(context.run_log_dir), kind)
    run_log = RunLogWriter(path)
    commands = CommandRunner(
        registry,
        operation_id=operation_id,
        run_log=run_log,
        default_timeout=context.command_timeout,
    )
    logger.debug("Session %s, run log %s", operation_id, path)
    return Session(
        context=context,
        commands=commands,
        run_log=run_log,
        operation_id=operation_id,
        confirm=confirm,
        sleep=sleep,
    )
