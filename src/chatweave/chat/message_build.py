"""System prompt resolution and outbound message assembly.

These are pure transforms that run before a stream session starts. History
rows are first converted to chat dictionaries (``message_to_chat``) so hook
filters can inspect and rewrite them, then converted to the wire format the
transport sends (``build_messages_for_send``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from .files import MAX_MESSAGE_FILE_HASHES, hash_to_content_part, parse_file_hashes
from .types import StoredMessage, new_id

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)

MAX_OUTBOUND_IMAGES = 5


def compose_system_prompt(master_prompt: str | None, thread_prompt: str | None) -> str | None:
    """Join the master prompt and the thread prompt, skipping empty parts."""

    parts = [part.strip() for part in (master_prompt, thread_prompt) if part and part.strip()]
    if not parts:
        return None
    return "\n\n".join(parts)


async def resolve_system_prompt_text(
    store: "MessageStore",
    thread_id: str | None,
    *,
    active_prompt: str | None = None,
) -> str | None:
    """Return the thread's own system prompt, falling back to ``active_prompt``."""

    if not thread_id:
        return None
    try:
        thread = await store.get_thread(thread_id)
        if thread is not None and thread.system_prompt_id:
            prompt = await store.get_prompt(thread.system_prompt_id)
            if prompt is not None:
                return prompt.content
    except Exception:
        LOGGER.warning("Failed to load system prompt for thread %s", thread_id, exc_info=True)
    return active_prompt or None


async def build_system_prompt_message(
    store: "MessageStore",
    thread_id: str | None,
    *,
    master_prompt: str | None = None,
    active_prompt: str | None = None,
) -> dict[str, Any] | None:
    thread_text = await resolve_system_prompt_text(store, thread_id, active_prompt=active_prompt)
    final_text = compose_system_prompt(master_prompt, thread_text)
    if not final_text:
        return None
    return {"id": f"system-{new_id()}", "role": "system", "content": final_text}


def message_to_chat(message: StoredMessage) -> dict[str, Any]:
    """Project a stored row into the chat dictionary seen by hook filters."""

    chat: dict[str, Any] = {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "file_hashes": message.file_hashes,
        "reasoning_text": message.reasoning_text,
    }
    tool_name = message.data.get("tool_name")
    if isinstance(tool_name, str):
        chat["name"] = tool_name
    tool_call_id = message.data.get("tool_call_id")
    if isinstance(tool_call_id, str):
        chat["tool_call_id"] = tool_call_id
    return chat


async def build_messages_for_send(
    history: Sequence[Mapping[str, Any]],
    *,
    store: "MessageStore",
    context_hashes: Sequence[str] | None = None,
    file_hashes: Sequence[str] | None = None,
    assistant_hashes: Sequence[str] = (),
    prev_assistant_id: str | None = None,
    max_images: int = MAX_OUTBOUND_IMAGES,
) -> list[dict[str, Any]]:
    """Convert chat dictionaries into wire messages.

    Tool-role rows are dropped (tool turns inside one reply are rebuilt by the
    stream session). When the previous assistant produced images its hashes
    are not re-sent. Up to six context hashes not already attached by the user
    are injected into the most recent user turn.
    """

    prepared: list[dict[str, Any]] = []
    for chat in history:
        role = chat.get("role")
        if role == "tool":
            continue
        entry = dict(chat)
        if assistant_hashes and prev_assistant_id and entry.get("id") == prev_assistant_id:
            entry["file_hashes"] = None
        prepared.append(entry)

    wire: list[dict[str, Any]] = []
    for entry in prepared:
        content: Any = entry.get("content") or ""
        hashes = parse_file_hashes(entry.get("file_hashes")) if entry.get("role") == "user" else []
        if hashes:
            parts: list[dict[str, Any]] = _as_parts(content)
            for file_hash in hashes[:MAX_MESSAGE_FILE_HASHES]:
                part = await hash_to_content_part(store, file_hash)
                if part is not None:
                    parts.append(part)
            content = parts
        wire.append({"role": entry["role"], "content": content})

    context_list = list(context_hashes or [])[:MAX_MESSAGE_FILE_HASHES]
    if context_list:
        seen = set(file_hashes or ())
        context_parts: list[dict[str, Any]] = []
        for file_hash in context_list:
            if not file_hash or file_hash in seen:
                continue
            if len(context_parts) >= MAX_MESSAGE_FILE_HASHES:
                break
            part = await hash_to_content_part(store, file_hash)
            if part is not None:
                context_parts.append(part)
                seen.add(file_hash)
        last_user = next((m for m in reversed(wire) if m["role"] == "user"), None)
        if context_parts and last_user is not None:
            last_user["content"] = _as_parts(last_user["content"]) + context_parts

    trim_images(wire, max_images)
    return wire


def trim_images(messages: list[dict[str, Any]], max_images: int) -> None:
    """Keep only the ``max_images`` most recent image parts across ``messages``."""

    kept = 0
    for message in reversed(messages):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        filtered: list[Any] = []
        for part in reversed(content):
            if isinstance(part, Mapping) and part.get("type") == "image_url":
                if kept >= max_images:
                    continue
                kept += 1
            filtered.append(part)
        filtered.reverse()
        message["content"] = filtered


def _as_parts(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    if isinstance(content, str) and content:
        return [{"type": "text", "text": content}]
    return []


__all__ = [
    "MAX_OUTBOUND_IMAGES",
    "build_messages_for_send",
    "build_system_prompt_message",
    "compose_system_prompt",
    "message_to_chat",
    "resolve_system_prompt_text",
    "trim_images",
]
