"""
Adapters — the only code that touches subprocesses and the network.

    Action → AdapterRegistry → Adapter → Receipt
"""

from exitnode.adapters.base import Adapter, ExecutionContext
from exitnode.adapters.mock import MockAdapter
from exitnode.adapters.registry import AdapterRegistry, create_default_registry

__all__ = [
    "Adapter",
    "AdapterRegistry",
    "ExecutionContext",
    "MockAdapter",
    "create_default_registry",
]
