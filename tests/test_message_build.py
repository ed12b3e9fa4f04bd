"""Tests for system prompt resolution and outbound message assembly."""

from __future__ import annotations

from typing import Any

import pytest

from chatweave.chat.message_build import (
    build_messages_for_send,
    build_system_prompt_message,
    compose_system_prompt,
    message_to_chat,
    resolve_system_prompt_text,
    trim_images,
)
from chatweave.chat.types import PromptRecord, StoredMessage, ThreadRecord
from chatweave.storage.memory import InMemoryMessageStore


def _image(n: int) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{n}"}}


def test_compose_system_prompt_skips_blank_parts() -> None:
    assert compose_system_prompt(None, None) is None
    assert compose_system_prompt("  ", "") is None
    assert compose_system_prompt("Master", None) == "Master"
    assert compose_system_prompt(" Master ", "Thread") == "Master\n\nThread"


@pytest.mark.asyncio
async def test_thread_prompt_overrides_active_prompt(store: InMemoryMessageStore) -> None:
    await store.upsert_prompt(PromptRecord(id="p1", content="Be terse."))
    await store.upsert_thread(ThreadRecord(id="t1", system_prompt_id="p1"))
    await store.upsert_thread(ThreadRecord(id="t2"))

    assert await resolve_system_prompt_text(store, "t1", active_prompt="Active") == "Be terse."
    assert await resolve_system_prompt_text(store, "t2", active_prompt="Active") == "Active"
    assert await resolve_system_prompt_text(store, None, active_prompt="Active") is None


@pytest.mark.asyncio
async def test_build_system_prompt_message(store: InMemoryMessageStore) -> None:
    message = await build_system_prompt_message(store, "t1", master_prompt="Master", active_prompt="Active")

    assert message is not None
    assert message["role"] == "system"
    assert message["content"] == "Master\n\nActive"
    assert message["id"].startswith("system-")
    assert await build_system_prompt_message(store, "t1") is None


def test_message_to_chat_carries_tool_metadata() -> None:
    row = StoredMessage(
        id="m1",
        thread_id="t",
        role="tool",
        content="result",
        data={"tool_name": "lookup", "tool_call_id": "call-1"},
    )

    chat = message_to_chat(row)

    assert chat["name"] == "lookup"
    assert chat["tool_call_id"] == "call-1"
    assert chat["role"] == "tool"


@pytest.mark.asyncio
async def test_tool_rows_are_dropped_and_user_files_attached(store: InMemoryMessageStore) -> None:
    image_hash = await store.put_file(b"cat", "image/png")
    history = [
        {"id": "s", "role": "system", "content": "System"},
        {"id": "u1", "role": "user", "content": "Look", "file_hashes": f'["{image_hash}"]'},
        {"id": "t1", "role": "tool", "content": "tool output"},
        {"id": "a1", "role": "assistant", "content": "A cat."},
    ]

    wire = await build_messages_for_send(history, store=store)

    assert [m["role"] for m in wire] == ["system", "user", "assistant"]
    assert wire[1]["content"][0] == {"type": "text", "text": "Look"}
    assert wire[1]["content"][1]["type"] == "image_url"
    assert wire[2] == {"role": "assistant", "content": "A cat."}


@pytest.mark.asyncio
async def test_context_hashes_go_to_last_user_turn(store: InMemoryMessageStore) -> None:
    attached = await store.put_file(b"attached", "image/png")
    extra = await store.put_file(b"extra", "image/png")
    history = [
        {"id": "u1", "role": "user", "content": "first"},
        {"id": "a1", "role": "assistant", "content": "reply"},
        {"id": "u2", "role": "user", "content": "second", "file_hashes": f'["{attached}"]'},
    ]

    wire = await build_messages_for_send(
        history,
        store=store,
        context_hashes=[attached, extra, "missing"],
        file_hashes=[attached],
    )

    assert wire[0]["content"] == "first"
    parts = wire[2]["content"]
    assert [part["type"] for part in parts] == ["text", "image_url", "image_url"]


@pytest.mark.asyncio
async def test_previous_assistant_images_are_not_resent(store: InMemoryMessageStore) -> None:
    generated = await store.put_file(b"generated", "image/png")
    history = [
        {"id": "u1", "role": "user", "content": "Draw"},
        {"id": "a1", "role": "assistant", "content": "Here", "file_hashes": f'["{generated}"]'},
        {"id": "u2", "role": "user", "content": "Again"},
    ]

    wire = await build_messages_for_send(
        history,
        store=store,
        assistant_hashes=[generated],
        prev_assistant_id="a1",
    )

    assert wire[1]["content"] == "Here"
    assert history[1]["file_hashes"] == f'["{generated}"]'


def test_trim_images_keeps_most_recent() -> None:
    messages = [
        {"role": "user", "content": [{"type": "text", "text": "old"}, _image(1), _image(2), _image(3)]},
        {"role": "assistant", "content": "ok"},
        {"role": "user", "content": [_image(4), _image(5), _image(6), {"type": "text", "text": "new"}]},
    ]

    trim_images(messages, 4)

    first = messages[0]["content"]
    assert first == [{"type": "text", "text": "old"}, _image(3)]
    assert messages[2]["content"] == [_image(4), _image(5), _image(6), {"type": "text", "text": "new"}]
