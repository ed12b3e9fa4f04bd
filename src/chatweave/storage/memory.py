"""In-process message store."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import replace
from threading import RLock
from typing import Sequence

from ..chat.files import content_hash
from ..chat.types import PromptRecord, StoredFile, StoredMessage, ThreadRecord

LOGGER = logging.getLogger(__name__)


class InMemoryMessageStore:
    """Dictionary-backed store suitable for tests and embedded use.

    Every read returns a copy so callers never alias stored rows. ``writes``
    counts message upserts and appends, which makes write coalescing observable.
    """

    def __init__(self) -> None:
        self._messages: dict[str, StoredMessage] = {}
        self._threads: dict[str, ThreadRecord] = {}
        self._prompts: dict[str, PromptRecord] = {}
        self._files: dict[str, StoredFile] = {}
        self._lock = RLock()
        self.writes = 0

    async def upsert_message(self, message: StoredMessage) -> None:
        with self._lock:
            stored = _copy(message)
            stored.updated_at = time.time()
            self._messages[message.id] = stored
            self.writes += 1

    async def append_message(self, message: StoredMessage) -> StoredMessage:
        with self._lock:
            indices = [row.index for row in self._messages.values() if row.thread_id == message.thread_id]
            stored = _copy(message)
            stored.index = (max(indices) + 1) if indices else 0
            stored.updated_at = time.time()
            self._messages[stored.id] = stored
            self.writes += 1
            return _copy(stored)

    async def get_message(self, message_id: str) -> StoredMessage | None:
        with self._lock:
            row = self._messages.get(message_id)
            return _copy(row) if row is not None else None

    async def query_thread(
        self,
        thread_id: str,
        *,
        start: int | None = None,
        end: int | None = None,
        include_deleted: bool = False,
    ) -> list[StoredMessage]:
        with self._lock:
            rows = [
                row
                for row in self._messages.values()
                if row.thread_id == thread_id
                and (include_deleted or not row.deleted)
                and (start is None or row.index >= start)
                and (end is None or row.index < end)
            ]
            rows.sort(key=lambda row: row.index)
            return [_copy(row) for row in rows]

    async def count_thread(self, thread_id: str) -> int:
        with self._lock:
            return sum(1 for row in self._messages.values() if row.thread_id == thread_id and not row.deleted)

    async def delete_messages(self, message_ids: Sequence[str]) -> None:
        with self._lock:
            for message_id in message_ids:
                self._messages.pop(message_id, None)

    async def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with self._lock:
            thread = self._threads.get(thread_id)
            return replace(thread) if thread is not None else None

    async def upsert_thread(self, thread: ThreadRecord) -> None:
        with self._lock:
            self._threads[thread.id] = replace(thread)

    async def get_prompt(self, prompt_id: str) -> PromptRecord | None:
        with self._lock:
            return self._prompts.get(prompt_id)

    async def upsert_prompt(self, prompt: PromptRecord) -> None:
        with self._lock:
            self._prompts[prompt.id] = prompt

    async def put_file(self, data: bytes, mime_type: str, *, name: str | None = None) -> str:
        digest = content_hash(data)
        with self._lock:
            if digest not in self._files:
                self._files[digest] = StoredFile(hash=digest, mime_type=mime_type, data=bytes(data), name=name)
            else:
                LOGGER.debug("File %s already stored", digest)
        return digest

    async def get_file(self, file_hash: str) -> StoredFile | None:
        with self._lock:
            return self._files.get(file_hash)


def _copy(message: StoredMessage) -> StoredMessage:
    return replace(message, data=copy.deepcopy(message.data))


__all__ = ["InMemoryMessageStore"]
