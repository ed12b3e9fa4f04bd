"""Foreground streaming session with a bounded tool loop.

A :class:`ForegroundStreamSession` drives a single assistant reply:

1. open a transport stream for the outbound message list;
2. fold text, reasoning, image and tool-call events into the live draft,
   persisting on a hybrid time/count cadence;
3. when the segment ends with tool calls pending, execute them sequentially,
   append the assistant and tool turns to the outbound list and stream again.

The loop is capped at ``StreamConfig.max_tool_iterations``. Reaching the cap
finalizes whatever draft exists and reports ``StreamStatus.TOOL_LIMIT`` rather
than raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from ..hooks import keys
from .errors import ChatError, ErrorCode, ErrorReporter
from .files import AttachmentMaterializer, append_placeholder, hash_placeholder, remote_image_placeholder
from .persistence import AssistantPersister
from .tools import ToolExecutor
from .types import (
    StoredMessage,
    StreamEvent,
    StreamOutcome,
    StreamStatus,
    ToolCall,
    ToolCallRecord,
    new_id,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..hooks.engine import HookEngine
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)

TextTransform = Callable[[str, str], str]
Clock = Callable[[], float]


# -----------------------------------------------------------------------------
# Collaborator interfaces
# -----------------------------------------------------------------------------


class CancellationToken:
    """Cooperative cancellation signal shared by one send across iterations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class StreamTransport(Protocol):
    """Produces normalized stream events for an outbound message list."""

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...


# -----------------------------------------------------------------------------
# Configuration and state
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StreamConfig:
    """Tunables for the foreground loop.

    Attributes:
        max_tool_iterations: Hard cap on stream/tool round trips.
        max_images: Maximum generated images stored per reply.
        flush_interval: Seconds between time-triggered persists.
        flush_every_chunks: Chunk count that triggers a persist.
        tool_result_summary_threshold: Results longer than this are summarized for display.
        tool_result_preview_chars: Characters kept in a summarized result.
    """

    max_tool_iterations: int = 10
    max_images: int = 6
    flush_interval: float = 0.5
    flush_every_chunks: int = 50
    tool_result_summary_threshold: int = 500
    tool_result_preview_chars: int = 200


class StreamPhase(str, Enum):
    INIT = "init"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    TOOL_EXECUTING = "tool_executing"
    FINALIZED = "finalized"
    ERROR = "error"


@dataclass(slots=True)
class StreamState:
    """Ephemeral, loop-owned state for one reply."""

    thread_id: str
    assistant_id: str
    stream_id: str
    text: str = ""
    reasoning: str = ""
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    file_hashes: list[str] = field(default_factory=list)
    pending: bool = True
    chunk_index: int = 0
    chunk_total: int = 0
    last_persist_at: float | None = None
    iteration: int = 0


class _Cancelled(Exception):
    pass


def summarize_tool_result(text: str, *, threshold: int = 500, preview_chars: int = 200) -> str:
    """Shorten an oversized tool result for display; the model still gets the full text."""

    if len(text) <= threshold:
        return text
    size_kb = round(len(text) / 1024)
    return f"Tool result ({size_kb}KB): {text[:preview_chars]}... [truncated for display]"


def _queue_tool_call(pending: list[ToolCall], call: ToolCall) -> None:
    # A repeated id within one segment replaces the earlier request in place
    for index, queued in enumerate(pending):
        if queued.id == call.id:
            LOGGER.debug("Tool call %s repeated in segment; keeping the latest request", call.id)
            pending[index] = call
            return
    pending.append(call)


# -----------------------------------------------------------------------------
# Session
# -----------------------------------------------------------------------------


class ForegroundStreamSession:
    """Drives one assistant reply through the stream/tool loop.

    The assistant message must already exist in the store. Storage, tools and
    attachment materialization are injected; the session never reaches for
    globals.
    """

    def __init__(
        self,
        *,
        transport: StreamTransport,
        store: "MessageStore",
        hooks: "HookEngine",
        assistant: StoredMessage,
        messages: list[dict[str, Any]],
        model: str | None = None,
        tools: ToolExecutor | None = None,
        tool_specs: Sequence[Mapping[str, Any]] | None = None,
        cancel_token: CancellationToken | None = None,
        config: StreamConfig | None = None,
        materializer: AttachmentMaterializer | None = None,
        text_transform: TextTransform | None = None,
        initial_text: str = "",
        initial_reasoning: str = "",
        initial_hashes: Sequence[str] = (),
        clock: Clock = time.monotonic,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._hooks = hooks
        self._messages = messages
        self._model = model
        self._tools = tools
        self._tool_specs = list(tool_specs) if tool_specs else None
        self._cancel_token = cancel_token or CancellationToken()
        self._config = config or StreamConfig()
        self._materializer = materializer or AttachmentMaterializer(store)
        self._text_transform = text_transform
        self._clock = clock
        self.reporter = reporter or ErrorReporter()
        self.phase = StreamPhase.INIT
        self.state = StreamState(
            thread_id=assistant.thread_id,
            assistant_id=assistant.id,
            stream_id=assistant.stream_id or new_id(),
            text=initial_text,
            reasoning=initial_reasoning,
            file_hashes=list(initial_hashes)[: self._config.max_images],
        )
        self.persister = AssistantPersister(store, assistant, self.state.file_hashes)

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def messages(self) -> list[dict[str, Any]]:
        """Outbound wire messages, including tool turns appended by the loop."""

        return self._messages

    async def run(self) -> StreamOutcome:
        """Run the loop to completion, cancellation or the iteration cap.

        Raises:
            Exception: Transport failures propagate unchanged.
        """

        state = self.state
        status = StreamStatus.COMPLETE
        wants_more = True
        while wants_more:
            if state.iteration >= self._config.max_tool_iterations:
                LOGGER.warning(
                    "Stream %s reached the tool iteration cap (%d)",
                    state.stream_id,
                    self._config.max_tool_iterations,
                )
                status = StreamStatus.TOOL_LIMIT
                break
            state.iteration += 1
            state.chunk_index = 0
            state.last_persist_at = None
            self.phase = StreamPhase.STREAMING
            LOGGER.debug("Stream %s iteration %d", state.stream_id, state.iteration)

            try:
                pending = await self._stream_segment()
            except _Cancelled:
                status = StreamStatus.ABORTED
                break
            except Exception:
                self.phase = StreamPhase.ERROR
                if state.iteration > 1:
                    LOGGER.warning(
                        "Stream %s failed during tool loop iteration %d",
                        state.stream_id,
                        state.iteration,
                        exc_info=True,
                    )
                raise

            if self._cancel_token.cancelled:
                status = StreamStatus.ABORTED
                break
            wants_more = bool(pending)
            if pending:
                self.phase = StreamPhase.TOOL_PENDING
                await self._execute_tools(pending)
                if self._cancel_token.cancelled:
                    status = StreamStatus.ABORTED
                    break

        await self._flush()
        self.phase = StreamPhase.FINALIZED
        return StreamOutcome(
            status=status,
            content=state.text,
            reasoning=state.reasoning,
            tool_calls=tuple(state.tool_calls.values()),
            file_hashes=tuple(state.file_hashes),
            iterations=state.iteration,
            chunk_count=state.chunk_total,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def _stream_segment(self) -> list[ToolCall]:
        pending: list[ToolCall] = []
        stream = self._transport.stream_chat(
            list(self._messages),
            model=self._model,
            tools=self._tool_specs,
            cancel_token=self._cancel_token,
        )
        iterator = stream.__aiter__()
        try:
            while True:
                event = await self._next_event(iterator)
                if event is None or event.type == "done":
                    break
                if event.type == "tool_call":
                    if event.tool_call is not None:
                        await self._on_tool_call(event.tool_call)
                        _queue_tool_call(pending, event.tool_call)
                    continue
                await self._fold(event)
                await self._maybe_persist()
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return pending

    async def _next_event(self, iterator: AsyncIterator[StreamEvent]) -> StreamEvent | None:
        if self._cancel_token.cancelled:
            raise _Cancelled()
        read = asyncio.ensure_future(iterator.__anext__())
        cancelled = asyncio.ensure_future(self._cancel_token.wait())
        try:
            done, _ = await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            read.cancel()
            cancelled.cancel()
            raise
        if read in done:
            cancelled.cancel()
            try:
                return read.result()
            except StopAsyncIteration:
                return None
        read.cancel()
        await asyncio.wait({read})
        LOGGER.debug("Stream %s cancelled: %s", self.state.stream_id, self._cancel_token.reason)
        raise _Cancelled()

    async def _fold(self, event: StreamEvent) -> None:
        state = self.state
        if event.type == "text":
            delta = event.text or ""
            if self._text_transform is not None:
                delta = self._text_transform(state.text, delta)
            state.pending = False
            if not delta:
                return
            await self._hooks.do_action(
                keys.STREAM_DELTA,
                delta,
                {
                    "thread_id": state.thread_id,
                    "assistant_id": state.assistant_id,
                    "stream_id": state.stream_id,
                    "delta_length": len(delta),
                    "total_length": len(state.text) + len(delta),
                    "chunk_index": state.chunk_index,
                },
            )
            state.text += delta
        elif event.type == "reasoning":
            delta = event.text or ""
            state.reasoning += delta
            await self._hooks.do_action(
                keys.STREAM_REASONING,
                delta,
                {
                    "thread_id": state.thread_id,
                    "assistant_id": state.assistant_id,
                    "stream_id": state.stream_id,
                    "reasoning_length": len(state.reasoning),
                },
            )
        elif event.type == "image":
            state.pending = False
            if event.url:
                await self._on_image(event.url)
        else:
            LOGGER.debug("Ignoring unknown stream event type %s", event.type)

    async def _on_image(self, url: str) -> None:
        state = self.state
        if len(state.file_hashes) >= self._config.max_images:
            LOGGER.debug("Image cap reached for stream %s; ignoring image", state.stream_id)
            return
        try:
            file_hash = await self._materializer.materialize(url)
        except Exception as exc:
            self.reporter.report(
                ChatError.wrap(
                    exc,
                    ErrorCode.ATTACHMENT,
                    tags={"domain": "chat", "stream_id": state.stream_id, "op": "materialize_image"},
                ),
                silent=True,
            )
            state.text = append_placeholder(state.text, remote_image_placeholder(url))
            return
        if file_hash not in state.file_hashes:
            state.file_hashes.append(file_hash)
        state.text = append_placeholder(state.text, hash_placeholder(file_hash))
        await self.persister(content=state.text, reasoning=state.reasoning or None)

    async def _on_tool_call(self, call: ToolCall) -> None:
        state = self.state
        state.pending = False
        state.tool_calls[call.id] = ToolCallRecord(id=call.id, name=call.name, args=call.arguments)
        # Out-of-band persist so the request survives a crash mid-stream
        await self.persister(
            content=state.text,
            reasoning=state.reasoning or None,
            tool_calls=list(state.tool_calls.values()),
        )

    async def _maybe_persist(self) -> None:
        state = self.state
        now = self._clock()
        due = (
            state.last_persist_at is None
            or now - state.last_persist_at >= self._config.flush_interval
            or state.chunk_index % self._config.flush_every_chunks == 0
        )
        state.chunk_index += 1
        state.chunk_total += 1
        if not due:
            return
        await self.persister(content=state.text, reasoning=state.reasoning or None)
        state.last_persist_at = now

    async def _flush(self) -> None:
        state = self.state
        await self.persister(
            content=state.text,
            reasoning=state.reasoning or None,
            tool_calls=list(state.tool_calls.values()) if state.tool_calls else None,
        )

    # ------------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------------
    async def _execute_tools(self, pending: list[ToolCall]) -> None:
        state = self.state
        self.phase = StreamPhase.TOOL_EXECUTING
        results: list[tuple[ToolCall, str]] = []
        for call in pending:
            record = state.tool_calls[call.id]
            await self._hooks.do_action(
                keys.TOOL_BEFORE,
                {
                    "thread_id": state.thread_id,
                    "assistant_id": state.assistant_id,
                    "tool_call_id": call.id,
                    "tool_name": call.name,
                },
            )
            if self._tools is None:
                error = f'Tool "{call.name}" is not registered.'
                result_text = f'Error executing tool "{call.name}": {error}'
                record.fail(error)
            else:
                execution = await self._tools.execute_tool(call.name, call.arguments)
                if execution.error is not None:
                    self.reporter.report(
                        ChatError(
                            code=ErrorCode.TOOL_FAILURE,
                            message=f"Tool {call.name} failed: {execution.error}",
                            tags={
                                "domain": "chat",
                                "tool_name": call.name,
                                "tool_call_id": call.id,
                                "timed_out": str(execution.timed_out).lower(),
                            },
                        )
                    )
                    result_text = f'Error executing tool "{call.name}": {execution.error}'
                    record.fail(execution.error)
                else:
                    result_text = execution.result or ""
                    record.complete(result_text)

            summary = summarize_tool_result(
                result_text,
                threshold=self._config.tool_result_summary_threshold,
                preview_chars=self._config.tool_result_preview_chars,
            )
            await self._store.append_message(
                StoredMessage(
                    id=new_id(),
                    thread_id=state.thread_id,
                    role="tool",
                    content=summary,
                    data={"content": summary, "tool_call_id": call.id, "tool_name": call.name},
                )
            )
            await self.persister(
                content=state.text,
                reasoning=state.reasoning or None,
                tool_calls=list(state.tool_calls.values()),
            )
            await self._hooks.do_action(
                keys.TOOL_AFTER,
                {
                    "thread_id": state.thread_id,
                    "assistant_id": state.assistant_id,
                    "tool_call_id": call.id,
                    "tool_name": call.name,
                    "status": record.status,
                },
            )
            results.append((call, result_text))

        self._messages.append(
            {
                "role": "assistant",
                "content": state.text,
                "tool_calls": [call.to_wire() for call in pending],
            }
        )
        for call, result_text in results:
            self._messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "name": call.name,
                    "content": result_text,
                }
            )


__all__ = [
    "CancellationToken",
    "ForegroundStreamSession",
    "StreamConfig",
    "StreamPhase",
    "StreamState",
    "StreamTransport",
    "TextTransform",
    "summarize_tool_result",
]
