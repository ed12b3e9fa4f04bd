"""Shared pytest fixtures."""

from __future__ import annotations

import pytest
import pytest_asyncio

from chatweave.chat.types import StoredMessage, ThreadRecord
from chatweave.hooks import HookEngine
from chatweave.storage.memory import InMemoryMessageStore

from tests.helpers import ScriptedTransport


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def hooks() -> HookEngine:
    return HookEngine()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest_asyncio.fixture
async def thread(store: InMemoryMessageStore) -> ThreadRecord:
    record = ThreadRecord(id="thread-1", title="Test thread")
    await store.upsert_thread(record)
    return record


@pytest_asyncio.fixture
async def draft(store: InMemoryMessageStore) -> StoredMessage:
    return await store.append_message(
        StoredMessage(id="assistant-1", thread_id="thread-1", role="assistant", pending=True, stream_id="stream-1")
    )
