"""
Adapter registry — dispatch for every external operation.

Steps never call an adapter directly: ``CommandRunner`` builds an Action
and hands it here.  The registry picks the adapter (or the mock, in
tests), validates, runs and times it, and always returns a Receipt.
"""

from __future__ import annotations

import logging
import time

from exitnode.adapters.base import Adapter, ExecutionContext
from exitnode.core.models.action import Action, Receipt

logger = logging.getLogger(__name__)


def _fail(action: Action, error: str) -> Receipt:
    return Receipt.failure(adapter=action.adapter, action_id=action.id, error=error)


class AdapterRegistry:
    """Adapters by name, plus an optional mock that takes every action."""

    def __init__(self) -> None:
        self._adapters: dict[str, Adapter] = {}
        self._mock: Adapter | None = None

    def set_mock_mode(self, enabled: bool, mock_adapter: Adapter | None = None) -> None:
        """Route every action, shell or http, to ``mock_adapter``."""
        if enabled and mock_adapter is None:
            raise ValueError("mock mode needs a mock adapter")
        self._mock = mock_adapter if enabled else None

    def register(self, adapter: Adapter) -> None:
        if adapter.name in self._adapters:
            logger.warning("Replacing adapter %r", adapter.name)
        self._adapters[adapter.name] = adapter

    def _resolve(self, action: Action) -> Adapter | None:
        if self._mock is not None:
            return self._mock
        return self._adapters.get(action.adapter)

    def execute_action(self, action: Action) -> Receipt:
        """Run ``action`` and return its Receipt. Never raises."""
        adapter = self._resolve(action)
        if adapter is None:
            return _fail(action, f"No adapter registered for '{action.adapter}'")

        context = ExecutionContext(action=action, params=action.params)
        try:
            valid, problem = adapter.validate(context)
        except Exception as e:
            return _fail(action, f"Validation error: {e}")
        if not valid:
            return _fail(action, f"Validation failed: {problem}")

        logger.debug("→ %s: %s", adapter.name, action.summary)
        started = time.monotonic()
        try:
            receipt = adapter.execute(context)
        except Exception as e:
            logger.error("Adapter %s raised on %s: %s", adapter.name, action.id, e)
            receipt = _fail(action, f"Unexpected error: {e}")
        receipt.duration_ms = int((time.monotonic() - started) * 1000)
        return receipt


def create_default_registry() -> AdapterRegistry:
    """Registry wired with the real shell and http adapters."""
    from exitnode.adapters.http.download import DownloadAdapter
    from exitnode.adapters.shell.command import ShellCommandAdapter

    registry = AdapterRegistry()
    registry.register(ShellCommandAdapter())
    registry.register(DownloadAdapter())
    return registry
