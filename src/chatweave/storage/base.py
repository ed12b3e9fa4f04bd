"""Storage interface consumed by the chat pipeline."""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from ..chat.types import PromptRecord, StoredFile, StoredMessage, ThreadRecord


@runtime_checkable
class MessageStore(Protocol):
    """Narrow async persistence interface for threads, messages and files.

    Implementations are the source of truth once a write returns. Message reads
    return detached copies; mutating them has no effect until written back.
    """

    async def upsert_message(self, message: StoredMessage) -> None:
        """Insert or replace a message by id."""
        ...

    async def append_message(self, message: StoredMessage) -> StoredMessage:
        """Append a message to its thread, assigning the next index."""
        ...

    async def get_message(self, message_id: str) -> StoredMessage | None:
        ...

    async def query_thread(
        self,
        thread_id: str,
        *,
        start: int | None = None,
        end: int | None = None,
        include_deleted: bool = False,
    ) -> list[StoredMessage]:
        """Return messages ordered by index, optionally within ``[start, end)``."""
        ...

    async def count_thread(self, thread_id: str) -> int:
        ...

    async def delete_messages(self, message_ids: Sequence[str]) -> None:
        """Remove every listed message in a single transaction."""
        ...

    async def get_thread(self, thread_id: str) -> ThreadRecord | None:
        ...

    async def upsert_thread(self, thread: ThreadRecord) -> None:
        ...

    async def get_prompt(self, prompt_id: str) -> PromptRecord | None:
        ...

    async def upsert_prompt(self, prompt: PromptRecord) -> None:
        ...

    async def put_file(self, data: bytes, mime_type: str, *, name: str | None = None) -> str:
        """Store bytes content-addressed and return their hash."""
        ...

    async def get_file(self, file_hash: str) -> StoredFile | None:
        ...


__all__ = ["MessageStore"]
