"""
Command runner — the step-facing side of the adapter registry.

Wraps every external call in an Action, dispatches it, and records the
operation so a failing step can report exactly which command broke.
``run(check=True)`` turns a failed Receipt into ``ExternalToolError``;
``check=False`` hands the Receipt back for best-effort calls.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from exitnode.adapters.registry import AdapterRegistry
from exitnode.core.errors import ExternalToolError
from exitnode.core.models.action import Action, Receipt
from exitnode.core.persistence.run_log import RunLogEntry, RunLogWriter

logger = logging.getLogger(__name__)

# Max characters of tool output kept in error details and the run log
_DETAIL_LIMIT = 4000


class CommandRunner:
    """Executes Actions for one operation."""

    def __init__(
        self,
        registry: AdapterRegistry,
        operation_id: str = "",
        run_log: RunLogWriter | None = None,
        default_timeout: int = 300,
    ):
        self._registry = registry
        self._operation_id = operation_id
        self._run_log = run_log
        self._default_timeout = default_timeout
        self._seq = 0
        self.step: str | None = None
        self.last_operation = ""

    def execute(self, action: Action) -> Receipt:
        """Dispatch an action and record it."""
        self.last_operation = action.summary
        logger.debug("→ %s", action.summary)
        receipt = self._registry.execute_action(action)

        if receipt.failed:
            logger.debug("✗ %s: %s", action.summary, receipt.error)
        if self._run_log is not None:
            self._run_log.write(
                RunLogEntry(
                    operation_id=self._operation_id,
                    step=self.step or "",
                    event="command",
                    status=receipt.status,
                    message=action.summary,
                    context={"return_code": receipt.return_code, "duration_ms": receipt.duration_ms},
                )
            )
        return receipt

    def _action(self, adapter: str, params: dict) -> Action:
        self._seq += 1
        prefix = self._operation_id or "op"
        return Action(
            id=f"{prefix}:{self.step or '-'}:{self._seq}",
            adapter=adapter,
            params=params,
            for_step=self.step,
        )

    def run(
        self,
        argv: Sequence[str | Path],
        *,
        check: bool = True,
        timeout: int | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input: str | None = None,
    ) -> Receipt:
        """Run a program.

        Raises:
            ExternalToolError: If ``check`` is set and the command failed.
        """
        params = {
            "argv": [str(a) for a in argv],
            "timeout": timeout or self._default_timeout,
        }
        if cwd is not None:
            params["cwd"] = str(cwd)
        if env:
            params["env"] = dict(env)
        if input is not None:
            params["input"] = input

        receipt = self.execute(self._action("shell", params))
        if check and receipt.failed:
            raise self._error(receipt, f"Command failed: {params['argv'][0]}")
        return receipt

    def download(self, url: str, dest: Path, *, timeout: int | None = None) -> Receipt:
        """Fetch ``url`` to ``dest``.

        Raises:
            ExternalToolError: If the download failed.
        """
        params = {"url": url, "dest": str(dest), "timeout": timeout or self._default_timeout}
        receipt = self.execute(self._action("http", params))
        if receipt.failed:
            raise self._error(receipt, f"Download failed: {url}")
        return receipt

    def succeeds(self, argv: Sequence[str | Path], **kwargs) -> bool:
        """Whether the command exits 0."""
        return self.run(argv, check=False, **kwargs).ok

    def output(self, argv: Sequence[str | Path], **kwargs) -> str | None:
        """Stdout of a successful command, or None."""
        receipt = self.run(argv, check=False, **kwargs)
        return receipt.output if receipt.ok else None

    def has_command(self, name: str) -> bool:
        """Whether ``name`` resolves on the PATH."""
        return self.succeeds(["sh", "-c", f'command -v "{name}"'])

    def _error(self, receipt: Receipt, message: str) -> ExternalToolError:
        return ExternalToolError(
            self.step or "pre-flight",
            message,
            operation=self.last_operation,
            detail=receipt.diagnostics[-_DETAIL_LIMIT:],
            return_code=receipt.return_code,
        )
