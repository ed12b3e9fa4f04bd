"""Tests for assistant draft persistence."""

from __future__ import annotations

import pytest

from chatweave.chat.persistence import AssistantPersister, update_message_record
from chatweave.chat.types import StoredMessage, ToolCallRecord
from chatweave.storage.memory import InMemoryMessageStore


@pytest.mark.asyncio
async def test_identical_calls_write_once(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    hashes: list[str] = []
    persister = AssistantPersister(store, draft, hashes)
    baseline = store.writes

    await persister(content="Hello", reasoning="thinking")
    after_first = store.writes
    await persister(content="Hello", reasoning="thinking")

    assert after_first == baseline + 1
    assert store.writes == after_first
    assert persister.write_count == 1


@pytest.mark.asyncio
async def test_writes_when_hashes_change(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    hashes: list[str] = []
    persister = AssistantPersister(store, draft, hashes)
    await persister(content="Hi")

    hashes.append("abc")
    serialized = await persister(content="Hi")

    stored = await store.get_message(draft.id)
    assert serialized == '["abc"]'
    assert stored is not None and stored.file_hashes == '["abc"]'
    assert persister.write_count == 2
    assert persister.serialized_hashes == '["abc"]'


@pytest.mark.asyncio
async def test_tool_calls_are_written_into_data(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    persister = AssistantPersister(store, draft, [])
    record = ToolCallRecord(id="call-1", name="lookup", args='{"q": 1}')

    await persister(content="", tool_calls=[record])
    await persister(content="", tool_calls=[record])

    stored = await store.get_message(draft.id)
    assert stored is not None
    assert stored.data["tool_calls"] == [{"id": "call-1", "name": "lookup", "args": '{"q": 1}', "status": "loading"}]
    assert persister.write_count == 1


@pytest.mark.asyncio
async def test_finalize_always_writes_and_clears_pending(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    persister = AssistantPersister(store, draft, [])
    await persister(content="Done")

    await persister(content="Done", finalize=True)

    stored = await store.get_message(draft.id)
    assert stored is not None
    assert stored.pending is False
    assert stored.content == "Done"
    assert persister.write_count == 2
    assert persister.snapshot.pending is False


@pytest.mark.asyncio
async def test_absent_fields_keep_previous_values(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    persister = AssistantPersister(store, draft, [])
    await persister(content="Partial", reasoning="why")

    await persister(finalize=True)

    stored = await store.get_message(draft.id)
    assert stored is not None
    assert stored.content == "Partial"
    assert stored.reasoning_text == "why"


@pytest.mark.asyncio
async def test_update_message_record_mirrors_error(store: InMemoryMessageStore, draft: StoredMessage) -> None:
    updated = await update_message_record(store, draft.id, {"error": "stopped", "pending": False, "note": "x"})

    assert updated is not None
    assert updated.error == "stopped"
    assert updated.pending is False
    assert updated.data == {"error": "stopped", "note": "x"}


@pytest.mark.asyncio
async def test_update_message_record_missing_message(store: InMemoryMessageStore) -> None:
    assert await update_message_record(store, "nope", {"error": "stopped"}) is None
