"""
Mock adapter — scripted stand-in for every external tool.

Installed through ``AdapterRegistry.set_mock_mode``.  Each rule pairs a
substring of the action summary (``"systemctl is-active xray"``,
``"download https://go.dev"``) with a response; the newest matching rule
wins.  Unmatched actions succeed with the default output.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Union

from exitnode.adapters.base import Adapter, ExecutionContext
from exitnode.core.models.action import Receipt

# A handler may build its own Receipt, return stdout text, or None for plain success
Handler = Callable[[ExecutionContext], Union[Receipt, str, None]]


class MockAdapter(Adapter):
    """Universal mock adapter for testing.

    By default, returns success for everything.
    """

    def __init__(
        self,
        adapter_name: str = "mock",
        default_output: str = "",
    ):
        self._name = adapter_name
        self._default_output = default_output
        self._rules: list[tuple[str, Handler]] = []
        self._call_log: list[ExecutionContext] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[ExecutionContext]:
        """All execution contexts this mock has received."""
        return self._call_log

    @property
    def commands(self) -> list[str]:
        """Summaries of every action received, in order."""
        return [c.action.summary for c in self._call_log]

    def on(self, pattern: str, handler: Handler | Receipt | str) -> None:
        """Respond to actions whose summary contains ``pattern``."""
        if isinstance(handler, (Receipt, str)):
            fixed = handler
            self._rules.append((pattern, lambda _ctx: fixed))
        else:
            self._rules.append((pattern, handler))

    def set_failure(self, pattern: str, error: str = "Mock failure", return_code: int = 1) -> None:
        """Configure matching actions to fail."""

        def _fail(ctx: ExecutionContext) -> Receipt:
            return Receipt.failure(
                adapter=ctx.action.adapter,
                action_id=ctx.action.id,
                error=error,
                return_code=return_code,
            )

        self._rules.append((pattern, _fail))

    def validate(self, context: ExecutionContext) -> tuple[bool, str]:
        return True, ""

    def execute(self, context: ExecutionContext) -> Receipt:
        self._call_log.append(context)
        summary = context.action.summary

        for pattern, handler in reversed(self._rules):
            if pattern in summary:
                result = handler(context)
                break
        else:
            result = None

        if isinstance(result, Receipt):
            return result
        return Receipt.success(
            adapter=context.action.adapter,
            action_id=context.action.id,
            output=self._default_output if result is None else result,
            return_code=0,
            metadata={"mock": True},
        )
