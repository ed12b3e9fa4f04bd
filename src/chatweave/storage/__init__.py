"""Message store interface and implementations."""

from .base import MessageStore
from .memory import InMemoryMessageStore
from .sqlite_store import SQLiteMessageStore

__all__ = ["InMemoryMessageStore", "MessageStore", "SQLiteMessageStore"]
