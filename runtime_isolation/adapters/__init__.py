"""Adapters — runtime facades the engine reconciles through.

Public re-exports for convenient access.
"""

from runtime_isolation.adapters.base import FatalRuntimeError, RuntimeFacade, RuntimeFacadeError
from runtime_isolation.adapters.memory import InMemoryRuntime

__all__ = [
    "FatalRuntimeError",
    "InMemoryRuntime",
    "RuntimeFacade",
    "RuntimeFacadeError",
]
