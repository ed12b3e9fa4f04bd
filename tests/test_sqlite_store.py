"""Tests for the SQLite-backed message store."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio

from chatweave.chat.files import content_hash
from chatweave.chat.types import PromptRecord, StoredMessage, ThreadRecord
from chatweave.storage.base import MessageStore
from chatweave.storage.sqlite_store import SQLiteMessageStore


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path) -> AsyncIterator[SQLiteMessageStore]:
    store = SQLiteMessageStore(tmp_path / "db" / "chat.sqlite3")
    yield store
    store.close()


@pytest.mark.asyncio
async def test_append_assigns_sequential_indices(sqlite_store: SQLiteMessageStore) -> None:
    first = await sqlite_store.append_message(StoredMessage(id="m1", thread_id="t1", role="user", content="hi"))
    second = await sqlite_store.append_message(
        StoredMessage(id="m2", thread_id="t1", role="assistant", pending=True, data={"tool_calls": []})
    )
    other = await sqlite_store.append_message(StoredMessage(id="m3", thread_id="t2", role="user"))

    assert (first.index, second.index, other.index) == (0, 1, 0)
    assert second.pending is True
    assert second.data == {"tool_calls": []}
    assert isinstance(sqlite_store, MessageStore)


@pytest.mark.asyncio
async def test_query_thread_window_and_soft_deletes(sqlite_store: SQLiteMessageStore) -> None:
    for number in range(4):
        await sqlite_store.append_message(
            StoredMessage(id=f"m{number}", thread_id="t1", role="user", content=str(number), deleted=number == 2)
        )

    visible = await sqlite_store.query_thread("t1")
    window = await sqlite_store.query_thread("t1", start=1, end=3, include_deleted=True)

    assert [m.id for m in visible] == ["m0", "m1", "m3"]
    assert [m.id for m in window] == ["m1", "m2"]
    assert await sqlite_store.count_thread("t1") == 3
    assert await sqlite_store.count_thread("missing") == 0


@pytest.mark.asyncio
async def test_upsert_replaces_fields_and_delete_removes(sqlite_store: SQLiteMessageStore) -> None:
    message = await sqlite_store.append_message(
        StoredMessage(id="m1", thread_id="t1", role="assistant", pending=True, stream_id="s1")
    )
    message.content = "done"
    message.pending = False
    message.error = "stopped"
    message.reasoning_text = "why"
    message.file_hashes = '["abc"]'

    await sqlite_store.upsert_message(message)
    stored = await sqlite_store.get_message("m1")

    assert stored is not None
    assert (stored.content, stored.pending, stored.error) == ("done", False, "stopped")
    assert stored.reasoning_text == "why"
    assert stored.file_hashes == '["abc"]'
    assert stored.stream_id == "s1"
    assert stored.index == 0

    await sqlite_store.delete_messages(["m1", "unknown"])
    await sqlite_store.delete_messages([])

    assert await sqlite_store.get_message("m1") is None


@pytest.mark.asyncio
async def test_threads_prompts_and_files(sqlite_store: SQLiteMessageStore) -> None:
    await sqlite_store.upsert_thread(ThreadRecord(id="t1", title="First", system_prompt_id="p1"))
    await sqlite_store.upsert_thread(ThreadRecord(id="t1", title="Renamed", system_prompt_id="p1"))
    await sqlite_store.upsert_prompt(PromptRecord(id="p1", content="Be brief"))
    await sqlite_store.upsert_prompt(PromptRecord(id="p1", content="Be briefer"))

    digest = await sqlite_store.put_file(b"\x89PNG", "image/png", name="dot.png")
    again = await sqlite_store.put_file(b"\x89PNG", "image/jpeg")

    thread = await sqlite_store.get_thread("t1")
    assert thread is not None and thread.title == "Renamed"
    assert await sqlite_store.get_thread("missing") is None
    assert await sqlite_store.get_prompt("p1") == PromptRecord(id="p1", content="Be briefer")
    assert await sqlite_store.get_prompt("missing") is None
    assert digest == again == content_hash(b"\x89PNG")
    stored = await sqlite_store.get_file(digest)
    assert stored is not None
    assert (stored.data, stored.mime_type, stored.name) == (b"\x89PNG", "image/png", "dot.png")
    assert await sqlite_store.get_file("missing") is None


@pytest.mark.asyncio
async def test_data_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "chat.sqlite3"
    store = SQLiteMessageStore(path)
    await store.append_message(StoredMessage(id="m1", thread_id="t1", role="user", content="persisted"))
    store.close()

    reopened = SQLiteMessageStore(path)
    try:
        messages = await reopened.query_thread("t1")
        appended = await reopened.append_message(StoredMessage(id="m2", thread_id="t1", role="assistant"))
    finally:
        reopened.close()

    assert [m.content for m in messages] == ["persisted"]
    assert appended.index == 1


@pytest.mark.asyncio
async def test_append_raises_when_row_cannot_be_read_back(
    sqlite_store: SQLiteMessageStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(sqlite_store, "_get_message_sync", lambda _message_id: None)

    with pytest.raises(RuntimeError, match="not readable after insert"):
        await sqlite_store.append_message(StoredMessage(id="m1", thread_id="t1", role="user"))
