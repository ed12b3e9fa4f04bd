"""Write-coalescing persistence for assistant drafts."""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from .files import serialize_file_hashes
from .types import StoredMessage, ToolCallRecord

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)

_MESSAGE_FIELDS = frozenset(f.name for f in fields(StoredMessage)) - {"id"}


class AssistantPersister:
    """Coalesces rapid draft updates into the minimal set of store writes.

    The persister holds the last written snapshot of one assistant message and
    a reference to a caller-owned, mutable list of attachment hashes. A call
    writes only when the hash serialization changed, when content, reasoning or
    tool calls differ from what was last written, or when ``finalize`` is
    requested. Exactly one persister should write a given message id at a time.
    """

    def __init__(
        self,
        store: "MessageStore",
        message: StoredMessage,
        file_hashes: list[str],
    ) -> None:
        self._store = store
        self._snapshot = replace(message, data=dict(message.data))
        self._file_hashes = file_hashes
        self._last_serialized = message.file_hashes
        self.write_count = 0

    @property
    def snapshot(self) -> StoredMessage:
        """Last written (or initial) projection of the message."""

        return self._snapshot

    @property
    def serialized_hashes(self) -> str | None:
        return self._last_serialized

    async def __call__(
        self,
        *,
        content: str | None = None,
        reasoning: str | None = None,
        tool_calls: Sequence[ToolCallRecord] | None = None,
        finalize: bool = False,
    ) -> str | None:
        serialized = self._last_serialized
        if self._file_hashes:
            serialized = serialize_file_hashes(self._file_hashes)

        tool_payload = [call.to_dict() for call in tool_calls] if tool_calls is not None else None
        hashes_changed = serialized != self._last_serialized
        content_given = content is not None and content != self._snapshot.content
        reasoning_given = reasoning is not None and reasoning != (self._snapshot.reasoning_text or "")
        tools_given = tool_payload is not None and tool_payload != self._snapshot.data.get("tool_calls")

        if not (hashes_changed or content_given or reasoning_given or tools_given or finalize):
            return self._last_serialized

        data = dict(self._snapshot.data)
        if tool_payload is not None:
            data["tool_calls"] = tool_payload
        updated = replace(
            self._snapshot,
            content=content if content is not None else self._snapshot.content,
            reasoning_text=reasoning if reasoning is not None else self._snapshot.reasoning_text,
            file_hashes=serialized,
            data=data,
            pending=False if finalize else self._snapshot.pending,
        )
        await self._store.upsert_message(updated)
        self._snapshot = updated
        self._last_serialized = serialized
        self.write_count += 1
        LOGGER.debug(
            "Persisted assistant %s (content=%d chars, finalize=%s)",
            updated.id,
            len(updated.content),
            finalize,
        )
        return serialized


async def update_message_record(
    store: "MessageStore",
    message_id: str,
    patch: Mapping[str, Any],
) -> StoredMessage | None:
    """Apply a partial update to a stored message.

    An ``error`` key is mirrored into ``data["error"]`` so readers of the
    structured payload see the same failure label. Unknown keys are merged into
    ``data``. Returns the updated record, or ``None`` when the message is gone.
    """

    current = await store.get_message(message_id)
    if current is None:
        LOGGER.debug("Skipping update for missing message %s", message_id)
        return None
    data = dict(current.data)
    changes: dict[str, Any] = {}
    for key, value in patch.items():
        if key == "data" and isinstance(value, Mapping):
            data.update(value)
        elif key in _MESSAGE_FIELDS:
            changes[key] = value
        else:
            data[key] = value
    if "error" in patch:
        data["error"] = patch["error"]
    updated = replace(current, data=data, **changes)
    await store.upsert_message(updated)
    return updated


__all__ = ["AssistantPersister", "update_message_record"]
