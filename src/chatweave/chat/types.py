"""Shared data types for the chat pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping

MessageRole = Literal["system", "user", "assistant", "tool"]
ToolCallStatus = Literal["loading", "complete", "error"]
StreamEventType = Literal["text", "reasoning", "image", "tool_call", "done"]


def new_id() -> str:
    return uuid.uuid4().hex


def _now() -> float:
    return time.time()


# -----------------------------------------------------------------------------
# Persisted records
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class StoredMessage:
    """A chat message row as held by the message store.

    Attributes:
        id: Unique message identifier.
        thread_id: Thread the message belongs to.
        role: One of ``system``, ``user``, ``assistant`` or ``tool``.
        content: Message text (may hold hash placeholders for images).
        index: Position within the thread, assigned on append.
        data: Free-form structured payload (tool calls, background job state).
        reasoning_text: Accumulated model reasoning, if any.
        file_hashes: Serialized attachment hash list (JSON array string).
        pending: ``True`` while an assistant reply is still being generated.
        deleted: Soft-delete marker.
        error: Terminal error label (``stopped``, ``stream_interrupted``...).
        stream_id: Identifier of the stream that produced the message.
    """

    id: str
    thread_id: str
    role: MessageRole
    content: str = ""
    index: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    reasoning_text: str | None = None
    file_hashes: str | None = None
    pending: bool = False
    deleted: bool = False
    error: str | None = None
    stream_id: str | None = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)


@dataclass(slots=True)
class ThreadRecord:
    id: str
    title: str = ""
    system_prompt_id: str | None = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)


@dataclass(slots=True, frozen=True)
class PromptRecord:
    id: str
    content: str


@dataclass(slots=True, frozen=True)
class StoredFile:
    """Content-addressed attachment bytes."""

    hash: str
    mime_type: str
    data: bytes
    name: str | None = None


# -----------------------------------------------------------------------------
# Tool calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = "{}"

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class ToolCallRecord:
    """Lifecycle record for one tool call inside an assistant draft.

    Records start in ``loading`` and move to ``complete`` or ``error`` once.
    """

    id: str
    name: str
    args: str = "{}"
    status: ToolCallStatus = "loading"
    result: str | None = None
    error: str | None = None

    @property
    def settled(self) -> bool:
        return self.status != "loading"

    def complete(self, result: str) -> None:
        if self.settled:
            raise RuntimeError(f"Tool call {self.id} already settled as {self.status}")
        self.status = "complete"
        self.result = result

    def fail(self, error: str) -> None:
        if self.settled:
            raise RuntimeError(f"Tool call {self.id} already settled as {self.status}")
        self.status = "error"
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "status": self.status,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ToolCallRecord":
        status = payload.get("status")
        return cls(
            id=str(payload.get("id") or new_id()),
            name=str(payload.get("name") or ""),
            args=str(payload.get("args") or "{}"),
            status=status if status in ("loading", "complete", "error") else "loading",
            result=payload.get("result"),
            error=payload.get("error"),
        )


# -----------------------------------------------------------------------------
# Stream events and outcomes
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StreamEvent:
    """Normalized transport event consumed by the foreground session."""

    type: StreamEventType
    text: str | None = None
    url: str | None = None
    index: int | None = None
    tool_call: ToolCall | None = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(type="text", text=text)

    @classmethod
    def reasoning_delta(cls, text: str) -> "StreamEvent":
        return cls(type="reasoning", text=text)

    @classmethod
    def image(cls, url: str, index: int | None = None) -> "StreamEvent":
        return cls(type="image", url=url, index=index)

    @classmethod
    def tool(cls, call_id: str, name: str, arguments: str = "{}") -> "StreamEvent":
        return cls(type="tool_call", tool_call=ToolCall(id=call_id, name=name, arguments=arguments))

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type="done")


class StreamStatus(str, Enum):
    """Terminal status of a foreground stream run."""

    COMPLETE = "complete"
    TOOL_LIMIT = "tool_limit"
    ABORTED = "aborted"


@dataclass(slots=True, frozen=True)
class StreamOutcome:
    """Result of one foreground stream run."""

    status: StreamStatus
    content: str
    reasoning: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    file_hashes: tuple[str, ...] = ()
    iterations: int = 0
    chunk_count: int = 0

    @property
    def total_length(self) -> int:
        return len(self.content)

    @property
    def reasoning_length(self) -> int:
        return len(self.reasoning)


__all__ = [
    "MessageRole",
    "PromptRecord",
    "StoredFile",
    "StoredMessage",
    "StreamEvent",
    "StreamEventType",
    "StreamOutcome",
    "StreamStatus",
    "ThreadRecord",
    "ToolCall",
    "ToolCallRecord",
    "ToolCallStatus",
    "new_id",
]
