"""Application-level chat orchestration.

:class:`ChatSession` is the app object: it owns the hook engine, the tool
registry and the background job registry, holds the injected store,
transport and attachment capabilities, and exposes the user-facing
operations (send, abort, retry, continue, background attach).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Sequence

from ..hooks import HookEngine, keys
from .background import (
    BackgroundConfig,
    BackgroundJobRegistry,
    BackgroundJobSource,
    BackgroundJobSubscriber,
    BackgroundJobTracker,
)
from .continuation import continue_message as _continue_message
from .errors import ChatError, ErrorCode, ErrorReporter
from .files import MAX_MESSAGE_FILE_HASHES, AttachmentMaterializer, parse_file_hashes, serialize_file_hashes
from .foreground import CancellationToken, ForegroundStreamSession, StreamConfig, StreamTransport
from .message_build import build_messages_for_send, build_system_prompt_message, message_to_chat
from .persistence import update_message_record
from .retry import RetryResult
from .retry import retry_message as _retry_message
from .tools import ToolRegistry
from .types import StoredMessage, StreamOutcome, StreamStatus, new_id

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..services.settings import Settings
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SendResult:
    """Outcome of :meth:`ChatSession.send_message`.

    ``assistant_id`` is ``None`` when the draft was discarded (aborted or
    failed before any output). ``error`` holds the reported failure, if any.
    """

    thread_id: str
    user_id: str
    assistant_id: str | None
    model: str | None
    outcome: StreamOutcome | None = None
    error: ChatError | None = None

    @property
    def status(self) -> StreamStatus | None:
        return self.outcome.status if self.outcome is not None else None


@dataclass(slots=True)
class ChatSession:
    """Orchestrates chat replies for one application instance."""

    transport: StreamTransport
    store: "MessageStore"
    hooks: HookEngine = field(default_factory=HookEngine)
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    job_source: BackgroundJobSource | None = None
    materializer: AttachmentMaterializer | None = None
    reporter: ErrorReporter = field(default_factory=ErrorReporter)
    stream_config: StreamConfig = field(default_factory=StreamConfig)
    background_config: BackgroundConfig = field(default_factory=BackgroundConfig)
    default_model: str | None = None
    master_prompt: str | None = None
    active_prompt: str | None = None
    continue_tail_chars: int = 1200
    clock: Callable[[], float] = time.monotonic
    tail_assistant_id: str | None = field(default=None, init=False)
    _jobs: BackgroundJobRegistry | None = field(default=None, init=False, repr=False)
    _token: CancellationToken | None = field(default=None, init=False, repr=False)
    _live: ForegroundStreamSession | None = field(default=None, init=False, repr=False)
    _threads: dict[str, list[StoredMessage]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.materializer is None:
            self.materializer = AttachmentMaterializer(self.store)
        if self.continue_tail_chars <= 0:
            raise ValueError("continue_tail_chars must be positive")

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        transport: StreamTransport,
        store: "MessageStore",
        job_source: BackgroundJobSource | None = None,
        **kwargs: Any,
    ) -> "ChatSession":
        """Build a session whose tunables come from ``settings``."""

        kwargs.setdefault("tools", ToolRegistry(settings.executor_config()))
        return cls(
            transport=transport,
            store=store,
            job_source=job_source,
            stream_config=settings.stream_config(),
            background_config=settings.background_config(),
            default_model=settings.model or None,
            master_prompt=settings.master_prompt or None,
            continue_tail_chars=settings.continue_tail_chars,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Stream ownership
    # ------------------------------------------------------------------
    @property
    def busy(self) -> bool:
        return self._token is not None

    @property
    def live_stream(self) -> ForegroundStreamSession | None:
        return self._live

    def begin_stream(self) -> CancellationToken:
        """Claim the single live-stream slot and return its cancellation token."""

        if self._token is not None:
            raise RuntimeError("A stream is already active")
        self._token = CancellationToken()
        return self._token

    def end_stream(self, token: CancellationToken) -> None:
        if self._token is token:
            self._token = None
            self._live = None

    def abort(self, reason: str = "aborted") -> bool:
        """Cancel the live stream, if any. Returns whether a stream was signalled."""

        token = self._token
        if token is None:
            return False
        LOGGER.debug("Aborting live stream: %s", reason)
        token.cancel(reason)
        return True

    # ------------------------------------------------------------------
    # Thread cache
    # ------------------------------------------------------------------
    async def load_thread(self, thread_id: str) -> list[StoredMessage]:
        messages = await self.store.query_thread(thread_id)
        self._threads[thread_id] = list(messages)
        return list(messages)

    def thread_messages(self, thread_id: str) -> list[StoredMessage]:
        return list(self._threads.get(thread_id, ()))

    async def reconcile_thread(self, thread_id: str) -> bool:
        """Reload the cached view when the store holds more rows. Returns whether it reloaded."""

        stored = await self.store.count_thread(thread_id)
        cached = len(self._threads.get(thread_id, ()))
        if stored <= cached:
            return False
        LOGGER.debug("Syncing thread %s from store (%d stored, %d cached)", thread_id, stored, cached)
        await self.load_thread(thread_id)
        return True

    def forget_messages(self, thread_id: str, message_ids: Sequence[str]) -> None:
        doomed = set(message_ids)
        cached = self._threads.get(thread_id)
        if cached is not None:
            cached[:] = [message for message in cached if message.id not in doomed]
        if self.tail_assistant_id in doomed:
            self.tail_assistant_id = None

    async def refresh_cached(self, message_id: str) -> None:
        message = await self.store.get_message(message_id)
        if message is None:
            return
        cached = self._threads.get(message.thread_id)
        if cached is None:
            return
        for position, existing in enumerate(cached):
            if existing.id == message_id:
                cached[position] = message
                return

    def _remember(self, message: StoredMessage) -> None:
        self._threads.setdefault(message.thread_id, []).append(message)

    # ------------------------------------------------------------------
    # Shared filter steps
    # ------------------------------------------------------------------
    async def select_model(self, requested: str | None = None) -> str | None:
        fallback = requested or self.default_model
        candidate = await self.hooks.apply_filters(keys.MODEL_SELECT_FILTER, fallback)
        if isinstance(candidate, str) and candidate:
            return candidate
        return fallback

    async def apply_before_send(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        filtered = await self.hooks.apply_filters(keys.MESSAGES_BEFORE_SEND_FILTER, {"messages": messages})
        if isinstance(filtered, dict) and isinstance(filtered.get("messages"), list):
            return filtered["messages"]
        return messages

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------
    async def send_message(
        self,
        thread_id: str,
        text: str,
        *,
        file_hashes: Sequence[str] | None = None,
        context_hashes: Sequence[str] | None = None,
        model: str | None = None,
    ) -> SendResult | None:
        """Append a user message and stream the assistant reply.

        Returns ``None`` when a stream is already active, the outgoing filter
        vetoed the message or there is nothing to send. Stream failures are
        reported and surfaced on the result rather than raised.
        """

        if self.busy:
            LOGGER.debug("Ignoring send for thread %s while a stream is active", thread_id)
            return None
        hashes = list(dict.fromkeys(h for h in (file_hashes or ()) if h))[:MAX_MESSAGE_FILE_HASHES]
        outgoing = await self.hooks.apply_filters(keys.OUTGOING_MESSAGE_FILTER, text, {"thread_id": thread_id})
        if outgoing is False:
            LOGGER.debug("Outgoing message for thread %s vetoed by filter", thread_id)
            return None
        if isinstance(outgoing, str):
            text = outgoing
        if not text.strip() and not hashes:
            return None

        token = self.begin_stream()
        started = time.perf_counter()
        try:
            return await self._send(thread_id, text, hashes, context_hashes, model, token, started)
        except Exception as exc:
            self.reporter.report(
                ChatError.wrap(
                    exc,
                    ErrorCode.INTERNAL,
                    message=f"send_message failed: {exc}",
                    tags={"domain": "chat", "op": "send_message", "thread_id": thread_id},
                )
            )
            return None
        finally:
            self.end_stream(token)

    async def _send(
        self,
        thread_id: str,
        text: str,
        hashes: list[str],
        context_hashes: Sequence[str] | None,
        requested_model: str | None,
        token: CancellationToken,
        started: float,
    ) -> SendResult:
        history = await self.store.query_thread(thread_id)
        previous_assistant = next((m for m in reversed(history) if m.role == "assistant"), None)

        user = await self.store.append_message(
            StoredMessage(
                id=new_id(),
                thread_id=thread_id,
                role="user",
                content=text,
                file_hashes=serialize_file_hashes(hashes) if hashes else None,
            )
        )
        self._remember(user)

        model = await self.select_model(requested_model)
        system = await build_system_prompt_message(
            self.store,
            thread_id,
            master_prompt=self.master_prompt,
            active_prompt=self.active_prompt,
        )
        chats: list[dict[str, Any]] = [system] if system else []
        chats.extend(message_to_chat(message) for message in [*history, user] if not _is_empty_assistant(message))
        filtered = await self.hooks.apply_filters(keys.MESSAGES_INPUT_FILTER, chats)
        if isinstance(filtered, list):
            chats = filtered

        previous_hashes = parse_file_hashes(previous_assistant.file_hashes) if previous_assistant else []
        wire = await build_messages_for_send(
            chats,
            store=self.store,
            context_hashes=context_hashes,
            file_hashes=hashes,
            assistant_hashes=previous_hashes,
            prev_assistant_id=previous_assistant.id if previous_assistant else None,
        )

        assistant = await self.store.append_message(
            StoredMessage(
                id=new_id(),
                thread_id=thread_id,
                role="assistant",
                pending=True,
                stream_id=new_id(),
            )
        )
        self._remember(assistant)
        self.tail_assistant_id = assistant.id

        await self.hooks.do_action(
            keys.SEND_BEFORE,
            {
                "thread_id": thread_id,
                "model": model,
                "user_id": user.id,
                "assistant_id": assistant.id,
                "stream_id": assistant.stream_id,
                "message_count": len(wire),
            },
        )
        wire = await self.apply_before_send(wire)

        stream = ForegroundStreamSession(
            transport=self.transport,
            store=self.store,
            hooks=self.hooks,
            assistant=assistant,
            messages=wire,
            model=model,
            tools=self.tools if len(self.tools) else None,
            tool_specs=self.tools.openai_tools() if len(self.tools) else None,
            cancel_token=token,
            config=self.stream_config,
            materializer=self.materializer,
            clock=self.clock,
            reporter=self.reporter,
        )
        self._live = stream
        stream_started = time.perf_counter()
        try:
            outcome = await stream.run()
        except Exception as exc:
            error = await self._handle_stream_failure(stream, exc, model)
            kept = await self.store.get_message(assistant.id) is not None
            return SendResult(
                thread_id=thread_id,
                user_id=user.id,
                assistant_id=assistant.id if kept else None,
                model=model,
                error=error,
            )

        timings = {
            "total_ms": round((time.perf_counter() - started) * 1000, 1),
            "stream_ms": round((time.perf_counter() - stream_started) * 1000, 1),
        }
        if outcome.status is StreamStatus.ABORTED:
            kept = await self._settle_aborted(stream, outcome)
            await self.hooks.do_action(
                keys.SEND_AFTER,
                {
                    "thread_id": thread_id,
                    "user_id": user.id,
                    "assistant_id": assistant.id if kept else None,
                    "model": model,
                    "status": outcome.status.value,
                    "aborted": True,
                    "timings": timings,
                },
            )
            return SendResult(thread_id, user.id, assistant.id if kept else None, model, outcome)

        content = outcome.content
        incoming = await self.hooks.apply_filters(
            keys.INCOMING_MESSAGE_FILTER,
            content,
            {"thread_id": thread_id, "assistant_id": assistant.id},
        )
        if isinstance(incoming, str):
            content = incoming
        await stream.persister(content=content, reasoning=outcome.reasoning or None, finalize=True)
        await self.refresh_cached(assistant.id)

        payload = {
            "thread_id": thread_id,
            "assistant_id": assistant.id,
            "stream_id": stream.state.stream_id,
            "status": outcome.status.value,
            "iterations": outcome.iterations,
            "total_length": len(content),
            "reasoning_length": outcome.reasoning_length,
            "file_hashes": list(outcome.file_hashes),
        }
        if outcome.status is StreamStatus.TOOL_LIMIT:
            await self.hooks.do_action(keys.STREAM_TOOL_LIMIT, payload)
        await self.hooks.do_action(keys.STREAM_COMPLETE, payload)
        await self.hooks.do_action(
            keys.SEND_AFTER,
            {
                "thread_id": thread_id,
                "user_id": user.id,
                "assistant_id": assistant.id,
                "model": model,
                "status": outcome.status.value,
                "aborted": False,
                "timings": timings,
            },
        )
        if content != outcome.content:
            outcome = replace(outcome, content=content)
        return SendResult(thread_id, user.id, assistant.id, model, outcome)

    async def _settle_aborted(self, stream: ForegroundStreamSession, outcome: StreamOutcome) -> bool:
        """Drop an empty aborted draft or mark a partial one stopped. Returns whether it was kept."""

        assistant_id = stream.state.assistant_id
        if not outcome.content.strip() and not outcome.file_hashes and not outcome.tool_calls:
            await self._discard_draft(stream)
            return False
        await stream.persister(content=outcome.content, reasoning=outcome.reasoning or None, finalize=True)
        await update_message_record(self.store, assistant_id, {"error": "stopped"})
        await self.refresh_cached(assistant_id)
        return True

    async def _handle_stream_failure(
        self,
        stream: ForegroundStreamSession,
        exc: Exception,
        model: str | None,
    ) -> ChatError:
        state = stream.state
        error = ChatError.wrap(
            exc,
            ErrorCode.STREAM_FAILURE,
            tags={
                "domain": "chat",
                "thread_id": state.thread_id,
                "stream_id": state.stream_id,
                "model": model or "",
                "stage": "send",
            },
        )
        self.reporter.report(error)
        await self.hooks.do_action(
            keys.STREAM_ERROR,
            {
                "thread_id": state.thread_id,
                "assistant_id": state.assistant_id,
                "stream_id": state.stream_id,
                "error": error.to_dict(),
                "iteration": state.iteration,
            },
        )
        if not state.text.strip() and not state.file_hashes and not state.tool_calls:
            await self._discard_draft(stream)
        else:
            await stream.persister(content=state.text, reasoning=state.reasoning or None, finalize=True)
            await update_message_record(self.store, state.assistant_id, {"error": "stream_interrupted"})
            await self.refresh_cached(state.assistant_id)
        return error

    async def _discard_draft(self, stream: ForegroundStreamSession) -> None:
        state = stream.state
        await self.store.delete_messages([state.assistant_id])
        self.forget_messages(state.thread_id, [state.assistant_id])

    # ------------------------------------------------------------------
    # Retry / continue
    # ------------------------------------------------------------------
    async def retry_message(self, message_id: str, model_override: str | None = None) -> RetryResult | None:
        return await _retry_message(self, message_id, model_override)

    async def continue_message(self, message_id: str, model_override: str | None = None) -> StreamOutcome | None:
        return await _continue_message(self, message_id, model_override)

    # ------------------------------------------------------------------
    # Background jobs
    # ------------------------------------------------------------------
    @property
    def jobs(self) -> BackgroundJobRegistry:
        """Background job registry, created on first use."""

        if self._jobs is None:
            if self.job_source is None:
                raise RuntimeError("No background job source configured")
            self._jobs = BackgroundJobRegistry(
                source=self.job_source,
                store=self.store,
                hooks=self.hooks,
                config=self.background_config,
                clock=self.clock,
            )
        return self._jobs

    async def attach_background_job(
        self,
        job_id: str,
        subscriber: BackgroundJobSubscriber,
        *,
        thread_id: str,
        message_id: str,
        user_id: str | None = None,
        initial_content: str | None = None,
        use_push: bool = False,
    ) -> tuple[BackgroundJobTracker, Callable[[], None]]:
        """Subscribe to ``job_id``, starting a tracker when none is running."""

        return await self.jobs.attach(
            job_id,
            subscriber,
            thread_id=thread_id,
            message_id=message_id,
            user_id=user_id,
            initial_content=initial_content,
            use_push=use_push,
        )

    async def aclose(self) -> None:
        self.abort("closing")
        if self._jobs is not None:
            await self._jobs.aclose()


def _is_empty_assistant(message: StoredMessage) -> bool:
    return message.role == "assistant" and not message.content.strip() and not message.file_hashes


__all__ = ["ChatSession", "SendResult"]
