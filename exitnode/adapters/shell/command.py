"""
Shell command adapter — run one external program and capture its output.

Commands are argv lists, never shell strings: tunnel names, paths and
versions are passed as discrete arguments so no value is ever re-parsed
by a shell.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path

from exitnode.adapters.base import Adapter, ExecutionContext
from exitnode.core.models.action import Receipt

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


class ShellCommandAdapter(Adapter):
    """Execute a program and capture output.

    Action params:
        argv (list[str]): Program and arguments.
        timeout (int): Timeout in seconds (default: 300).
        cwd (str): Working directory (default: inherited).
        env (dict): Variables merged over the current environment.
        input (str): Text fed to stdin.
    """

    @property
    def name(self) -> str:
        return "shell"

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        argv = context.params.get("argv")
        if not argv or not isinstance(argv, list):
            return False, "Missing required param: 'argv'"

        cwd = context.params.get("cwd")
        if cwd and not Path(cwd).is_dir():
            return False, f"Working directory does not exist: {cwd}"

        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        argv = [str(a) for a in context.params["argv"]]
        timeout = context.params.get("timeout") or DEFAULT_TIMEOUT
        cwd = context.params.get("cwd")
        extra_env = context.params.get("env") or {}
        stdin_text = context.params.get("input")

        env = None
        if extra_env:
            env = {**os.environ, **{k: str(v) for k, v in extra_env.items()}}

        logger.debug("Executing: %s (cwd=%s)", " ".join(argv), cwd)
        start = time.monotonic()

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                env=env,
                input=stdin_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Command timed out after {timeout}s",
                metadata={"timeout": timeout},
            )
        except FileNotFoundError:
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Command not found: {argv[0]}",
                return_code=127,
            )
        except Exception as e:
            return Receipt.failure(
                adapter=self.name,
                action_id=context.action.id,
                error=f"Command execution error: {e}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        output = result.stdout.strip()
        stderr = result.stderr.strip()

        if result.returncode == 0:
            return Receipt.success(
                adapter=self.name,
                action_id=context.action.id,
                output=output,
                duration_ms=elapsed_ms,
                return_code=0,
                metadata={"stderr": stderr},
            )
        return Receipt.failure(
            adapter=self.name,
            action_id=context.action.id,
            error=stderr or f"Command exited with code {result.returncode}",
            output=output,
            duration_ms=elapsed_ms,
            return_code=result.returncode,
        )
