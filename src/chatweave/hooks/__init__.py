"""Hook engine: priority-ordered actions and filters."""

from . import keys
from .engine import (
    DEFAULT_PRIORITY,
    Disposer,
    HookCallback,
    HookDiagnostics,
    HookEngine,
    HookKind,
    HookRegistration,
)

__all__ = [
    "DEFAULT_PRIORITY",
    "Disposer",
    "HookCallback",
    "HookDiagnostics",
    "HookEngine",
    "HookKind",
    "HookRegistration",
    "keys",
]
