"""Reconnectable background job tracking with multi-subscriber fan-out.

A background job is a streaming reply generated server-side, independent of
any one view. The :class:`BackgroundJobRegistry` owns at most one
:class:`BackgroundJobTracker` per job id; views attach and detach as
subscribers. Each tracker reads job snapshots from a push subscription or a
poll loop, persists progress on a coarse cadence, and fans every update out
to its subscribers. A tracker is dropped from the registry only once its job
is terminal and nobody is subscribed, or when it is force-stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Mapping, Protocol, runtime_checkable

from ..hooks import keys

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..hooks.engine import HookEngine
    from ..storage.base import MessageStore

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


# -----------------------------------------------------------------------------
# Job model
# -----------------------------------------------------------------------------


class BackgroundJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (BackgroundJobStatus.COMPLETE, BackgroundJobStatus.ERROR, BackgroundJobStatus.ABORTED)

    @classmethod
    def parse(cls, value: Any) -> "BackgroundJobStatus":
        text = str(getattr(value, "value", value) or "").strip().lower()
        if text == "streaming":
            return cls.RUNNING
        try:
            return cls(text)
        except ValueError:
            LOGGER.debug("Unknown background job status %r; treating as running", value)
            return cls.RUNNING


@dataclass(slots=True, frozen=True)
class BackgroundJobSnapshot:
    """One status reading of a background job.

    ``content`` is the full accumulated text when present; ``content_delta`` is
    text appended since the requested offset; ``content_length`` is the
    authoritative total length when the source knows it.
    """

    job_id: str
    status: BackgroundJobStatus
    content: str | None = None
    content_delta: str | None = None
    content_length: int | None = None
    error: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    workflow_state: Mapping[str, Any] | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, job_id: str | None = None) -> "BackgroundJobSnapshot":
        tool_calls = payload.get("tool_calls")
        workflow_state = payload.get("workflow_state")
        content_length = payload.get("content_length")
        return cls(
            job_id=str(payload.get("id") or payload.get("job_id") or job_id or ""),
            status=BackgroundJobStatus.parse(payload.get("status")),
            content=payload.get("content") if isinstance(payload.get("content"), str) else None,
            content_delta=payload.get("content_delta") if isinstance(payload.get("content_delta"), str) else None,
            content_length=content_length if isinstance(content_length, int) else None,
            error=payload.get("error") if isinstance(payload.get("error"), str) else None,
            tool_calls=tuple(tool_calls) if isinstance(tool_calls, list) else None,
            workflow_state=workflow_state if isinstance(workflow_state, Mapping) else None,
        )


@dataclass(slots=True, frozen=True)
class BackgroundJobUpdate:
    snapshot: BackgroundJobSnapshot
    content: str
    delta: str

    @property
    def status(self) -> BackgroundJobStatus:
        return self.snapshot.status


@dataclass(slots=True, eq=False)
class BackgroundJobSubscriber:
    """Callbacks invoked synchronously for each update of a tracked job."""

    on_update: Callable[[BackgroundJobUpdate], None] | None = None
    on_complete: Callable[[BackgroundJobUpdate], None] | None = None
    on_error: Callable[[BackgroundJobUpdate], None] | None = None
    on_abort: Callable[[BackgroundJobUpdate], None] | None = None


@runtime_checkable
class BackgroundJobSource(Protocol):
    """Remote view of background jobs (polling, push and abort)."""

    async def fetch_status(self, job_id: str, *, offset: int = 0) -> BackgroundJobSnapshot:
        ...

    def stream_updates(self, job_id: str, *, offset: int = 0) -> AsyncIterator[BackgroundJobSnapshot]:
        ...

    async def abort(self, job_id: str) -> bool:
        ...


@dataclass(slots=True, frozen=True)
class BackgroundConfig:
    """Cadence tunables in seconds."""

    poll_idle_interval: float = 0.3
    poll_active_interval: float = 0.08
    persist_interval: float = 0.5


def _workflow_version(state: Mapping[str, Any] | None) -> int:
    if not isinstance(state, Mapping):
        return -1
    version = state.get("version")
    return version if isinstance(version, int) and not isinstance(version, bool) else 0


# -----------------------------------------------------------------------------
# Tracker
# -----------------------------------------------------------------------------


class BackgroundJobTracker:
    """Tracks one background job and fans its progress out to subscribers."""

    def __init__(
        self,
        registry: "BackgroundJobRegistry",
        *,
        job_id: str,
        thread_id: str,
        message_id: str,
        user_id: str | None = None,
        initial_content: str = "",
    ) -> None:
        self._registry = registry
        self.job_id = job_id
        self.user_id = user_id
        self.thread_id = thread_id
        self.message_id = message_id
        self.status = BackgroundJobStatus.RUNNING
        self.last_workflow_version = -1
        self.last_content = initial_content
        self.last_persisted_length = len(initial_content)
        self.last_persist_at: float | None = None
        self.polling = False
        self.streaming = False
        self.active = False
        self.subscribers: list[BackgroundJobSubscriber] = []
        self.completion: asyncio.Future[BackgroundJobUpdate] = asyncio.get_running_loop().create_future()
        self._lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._finished = False

    @property
    def finished(self) -> bool:
        """Whether a terminal status has been observed (or the tracker was stopped)."""

        return self._finished

    def __repr__(self) -> str:
        return (
            f"BackgroundJobTracker(job_id={self.job_id!r}, status={self.status.value}, "
            f"subscribers={len(self.subscribers)}, polling={self.polling}, streaming={self.streaming})"
        )

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def subscribe(self, subscriber: BackgroundJobSubscriber) -> Callable[[], None]:
        """Add ``subscriber`` and return a closure that detaches it."""

        if subscriber not in self.subscribers:
            self.subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self.subscribers:
                self.subscribers.remove(subscriber)
            if self.subscribers:
                return
            if self._finished:
                self._registry._discard(self)
                return
            # Nobody is watching: drop the push channel, keep polling so a later attach can resume
            if self.streaming:
                self._cancel_push()
            if not self.polling:
                self._start_polling()

        return unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, use_push: bool = False) -> None:
        if self._finished or self.polling or self.streaming:
            return
        self.active = True
        if use_push:
            self.streaming = True
            self._push_task = asyncio.create_task(self._push_loop(), name=f"background-push-{self.job_id}")
        else:
            self._start_polling()

    async def prime(self) -> None:
        """Fetch the current job status once and process it immediately."""

        try:
            snapshot = await self._registry.source.fetch_status(self.job_id)
        except Exception as exc:
            LOGGER.debug("Initial status fetch failed for job %s: %s", self.job_id, exc)
            return
        await self.handle_snapshot(snapshot)

    async def force_stop(self) -> None:
        """Stop all update sources and drop the tracker regardless of subscribers."""

        self.active = False
        self._finished = True
        tasks = [task for task in (self._poll_task, self._push_task) if task is not None]
        for task in tasks:
            if task is not asyncio.current_task():
                task.cancel()
        for task in tasks:
            if task is not asyncio.current_task():
                await asyncio.gather(task, return_exceptions=True)
        self.polling = False
        self.streaming = False
        self._registry._discard(self)

    # ------------------------------------------------------------------
    # Update processing
    # ------------------------------------------------------------------
    async def handle_snapshot(self, snapshot: BackgroundJobSnapshot) -> bool:
        """Process one snapshot; return whether tracking should continue."""

        async with self._lock:
            if self._finished:
                return False
            if snapshot.status.terminal:
                snapshot = await self._ensure_full(snapshot)
            content, delta = self._derive_content(snapshot)
            self.last_content = content

            persisted = await self._persist(snapshot, content)
            if not persisted:
                await self._handle_missing_message(snapshot, content)
                return False

            update = BackgroundJobUpdate(snapshot=snapshot, content=content, delta=delta)
            await self._registry.hooks.do_action(
                keys.BACKGROUND_UPDATE,
                {
                    "job_id": self.job_id,
                    "thread_id": self.thread_id,
                    "message_id": self.message_id,
                    "status": snapshot.status.value,
                    "content_length": len(content),
                    "delta_length": len(delta),
                },
            )
            self._fan_out("on_update", update)
            if not snapshot.status.terminal:
                return True
            await self._finish(update)
            return False

    def _derive_content(self, snapshot: BackgroundJobSnapshot) -> tuple[str, str]:
        current = self.last_content
        candidate = current
        if snapshot.content_delta is not None:
            candidate = current + snapshot.content_delta
        elif snapshot.content is not None:
            candidate = snapshot.content
        if snapshot.content_length is not None:
            if len(candidate) > snapshot.content_length:
                candidate = candidate[: snapshot.content_length]
            elif len(candidate) < snapshot.content_length and snapshot.content is not None:
                candidate = snapshot.content
        # Content never shrinks
        safe = candidate if len(candidate) >= len(current) else current
        delta = safe[len(current):] if len(safe) > len(current) else ""
        return safe, delta

    async def _ensure_full(self, snapshot: BackgroundJobSnapshot) -> BackgroundJobSnapshot:
        expected = snapshot.content_length
        if expected is None and snapshot.content is not None:
            expected = len(snapshot.content)
        if snapshot.content is not None and (expected is None or len(snapshot.content) >= expected):
            return snapshot
        try:
            full = await self._registry.source.fetch_status(self.job_id)
        except Exception as exc:
            LOGGER.debug("Full status refetch failed for job %s: %s", self.job_id, exc)
            return snapshot
        if not full.status.terminal:
            return replace(full, status=snapshot.status, error=full.error or snapshot.error)
        return full

    async def _persist(self, snapshot: BackgroundJobSnapshot, content: str) -> bool:
        registry = self._registry
        now = registry.clock()
        status_changed = snapshot.status != self.status
        content_grew = len(content) > self.last_persisted_length
        interval_elapsed = (
            self.last_persist_at is None
            or now - self.last_persist_at > registry.config.persist_interval
        )
        persist_content = content_grew and (interval_elapsed or snapshot.status.terminal)
        if not status_changed and not persist_content:
            return True

        existing = await registry.store.get_message(self.message_id)
        if existing is None:
            return False

        if snapshot.status is BackgroundJobStatus.ERROR:
            next_error: str | None = snapshot.error or "Background response failed"
        elif snapshot.status is BackgroundJobStatus.ABORTED:
            next_error = "Background response aborted"
        else:
            next_error = None

        data = dict(existing.data)
        workflow_version = _workflow_version(snapshot.workflow_state)
        if snapshot.workflow_state is not None and workflow_version >= self.last_workflow_version:
            data.update(snapshot.workflow_state)
            self.last_workflow_version = workflow_version
        data["content"] = content or data.get("content", "")
        data["background_job_id"] = self.job_id
        data["background_job_status"] = snapshot.status.value
        if snapshot.error:
            data["background_job_error"] = snapshot.error
        if next_error:
            data["error"] = next_error
        if snapshot.tool_calls is not None:
            data["tool_calls"] = [dict(call) for call in snapshot.tool_calls]

        await registry.store.upsert_message(
            replace(
                existing,
                content=content or existing.content,
                pending=not snapshot.status.terminal,
                error=next_error,
                data=data,
            )
        )
        self.status = snapshot.status
        self.last_persist_at = now
        self.last_persisted_length = len(content)
        return True

    async def _handle_missing_message(self, snapshot: BackgroundJobSnapshot, content: str) -> None:
        LOGGER.info("Message %s for background job %s is gone; aborting job", self.message_id, self.job_id)
        self.active = False
        self._finished = True
        self._registry._discard(self)
        try:
            await self._registry.source.abort(self.job_id)
        except Exception as exc:
            LOGGER.warning("Failed to abort background job %s: %s", self.job_id, exc)
        aborted = BackgroundJobSnapshot(
            job_id=self.job_id,
            status=BackgroundJobStatus.ABORTED,
            content=content,
            error="Target message no longer exists",
        )
        update = BackgroundJobUpdate(snapshot=aborted, content=content, delta="")
        self.status = BackgroundJobStatus.ABORTED
        self._fan_out("on_abort", update)
        if not self.completion.done():
            self.completion.set_result(update)

    async def _finish(self, update: BackgroundJobUpdate) -> None:
        status = update.status
        callback = {
            BackgroundJobStatus.COMPLETE: "on_complete",
            BackgroundJobStatus.ABORTED: "on_abort",
        }.get(status, "on_error")
        self._fan_out(callback, update)
        self.active = False
        self._finished = True
        if not self.completion.done():
            self.completion.set_result(update)
        payload = {
            "job_id": self.job_id,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "status": status.value,
            "content_length": len(update.content),
        }
        await self._registry.hooks.do_action(keys.BACKGROUND_COMPLETE, payload)
        if not self.subscribers:
            await self._registry.hooks.do_action(keys.NOTIFY_PUSH, self._notification(update))
            self._registry._discard(self)
        if self.streaming and self._push_task is not asyncio.current_task():
            self._cancel_push()

    def _notification(self, update: BackgroundJobUpdate) -> dict[str, Any]:
        status = update.status
        if status is BackgroundJobStatus.ERROR:
            title, body, kind = "AI response failed", update.snapshot.error or "Background response failed.", "system.warning"
        elif status is BackgroundJobStatus.ABORTED:
            title, body, kind = "AI response stopped", "Background response was aborted.", "system.warning"
        else:
            title, body, kind = "AI response ready", "Your background response is ready.", "ai.message.received"
        return {
            "type": kind,
            "title": title,
            "body": body,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "user_id": self.user_id,
        }

    def _fan_out(self, callback_name: str, update: BackgroundJobUpdate) -> None:
        for subscriber in list(self.subscribers):
            callback = getattr(subscriber, callback_name)
            if callback is None:
                continue
            try:
                callback(update)
            except Exception:
                LOGGER.exception("Background job subscriber %s failed for job %s", callback_name, self.job_id)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def _start_polling(self) -> None:
        if self.polling or self._finished:
            return
        self.polling = True
        self.active = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"background-poll-{self.job_id}")

    def _cancel_push(self) -> None:
        task = self._push_task
        self.streaming = False
        self._push_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _poll_loop(self) -> None:
        registry = self._registry
        try:
            while self.active:
                try:
                    snapshot = await registry.source.fetch_status(self.job_id, offset=len(self.last_content))
                except Exception as exc:
                    LOGGER.warning("Polling background job %s failed: %s", self.job_id, exc)
                    snapshot = BackgroundJobSnapshot(
                        job_id=self.job_id,
                        status=BackgroundJobStatus.ERROR,
                        content=self.last_content,
                        error=str(exc) or "Unknown error",
                    )
                if not await self.handle_snapshot(snapshot):
                    break
                interval = (
                    registry.config.poll_active_interval
                    if self.subscribers
                    else registry.config.poll_idle_interval
                )
                await asyncio.sleep(interval)
        finally:
            self.polling = False

    async def _push_loop(self) -> None:
        registry = self._registry
        fallback = False
        try:
            async for snapshot in registry.source.stream_updates(self.job_id, offset=len(self.last_content)):
                if not await self.handle_snapshot(snapshot):
                    return
            fallback = not self._finished
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Push channel for background job %s failed; polling instead: %s", self.job_id, exc)
            fallback = True
        finally:
            self.streaming = False
        if fallback and self.active:
            self._start_polling()


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class BackgroundJobRegistry:
    """Owns the trackers for one application instance (one tracker per job id)."""

    def __init__(
        self,
        *,
        source: BackgroundJobSource,
        store: "MessageStore",
        hooks: "HookEngine",
        config: BackgroundConfig | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.source = source
        self.store = store
        self.hooks = hooks
        self.config = config or BackgroundConfig()
        self.clock = clock
        self._trackers: dict[str, BackgroundJobTracker] = {}

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._trackers

    def __len__(self) -> int:
        return len(self._trackers)

    def get(self, job_id: str) -> BackgroundJobTracker | None:
        return self._trackers.get(job_id)

    def ensure(
        self,
        job_id: str,
        *,
        thread_id: str,
        message_id: str,
        user_id: str | None = None,
        initial_content: str | None = None,
        use_push: bool = False,
    ) -> BackgroundJobTracker:
        """Return the tracker for ``job_id``, creating and starting it if needed."""

        existing = self._trackers.get(job_id)
        if existing is not None:
            if user_id and existing.user_id != user_id:
                existing.user_id = user_id
            if not existing.thread_id:
                existing.thread_id = thread_id
            if not existing.message_id:
                existing.message_id = message_id
            if initial_content and len(initial_content) > len(existing.last_content):
                existing.last_content = initial_content
                existing.last_persisted_length = len(initial_content)
            if use_push and not existing.polling and not existing.streaming:
                existing.start(use_push=True)
            return existing

        tracker = BackgroundJobTracker(
            self,
            job_id=job_id,
            thread_id=thread_id,
            message_id=message_id,
            user_id=user_id,
            initial_content=initial_content or "",
        )
        self._trackers[job_id] = tracker
        LOGGER.debug("Tracking background job %s for message %s", job_id, message_id)
        tracker.start(use_push=use_push)
        return tracker

    async def attach(
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
        """Ensure a tracker, subscribe to it and return ``(tracker, unsubscribe)``."""

        tracker = self.ensure(
            job_id,
            thread_id=thread_id,
            message_id=message_id,
            user_id=user_id,
            initial_content=initial_content,
            use_push=use_push,
        )
        unsubscribe = tracker.subscribe(subscriber)
        return tracker, unsubscribe

    async def aclose(self) -> None:
        for tracker in list(self._trackers.values()):
            await tracker.force_stop()

    def _discard(self, tracker: BackgroundJobTracker) -> None:
        if self._trackers.get(tracker.job_id) is tracker:
            del self._trackers[tracker.job_id]
            LOGGER.debug("Stopped tracking background job %s", tracker.job_id)


__all__ = [
    "BackgroundConfig",
    "BackgroundJobRegistry",
    "BackgroundJobSnapshot",
    "BackgroundJobSource",
    "BackgroundJobStatus",
    "BackgroundJobSubscriber",
    "BackgroundJobTracker",
    "BackgroundJobUpdate",
]
