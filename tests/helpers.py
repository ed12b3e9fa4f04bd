"""Shared test helpers and stub classes."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Sequence

from chatweave.chat.background import BackgroundJobSnapshot, BackgroundJobStatus
from chatweave.chat.types import StreamEvent

ScriptItem = Any


class ScriptedTransport:
    """Replays one scripted segment per ``stream_chat`` call.

    A segment is a list of :class:`StreamEvent` objects. Exceptions in a
    segment are raised at that point, and :class:`asyncio.Event` items block the
    stream until set. When ``factory`` is given it builds the segment for each
    call index instead.
    """

    def __init__(
        self,
        *segments: Iterable[ScriptItem],
        factory: Callable[[int], Iterable[ScriptItem]] | None = None,
    ) -> None:
        self.segments = [list(segment) for segment in segments]
        self.factory = factory
        self.calls: list[dict[str, Any]] = []

    def _segment(self, index: int) -> list[ScriptItem]:
        if self.factory is not None:
            return list(self.factory(index))
        if index < len(self.segments):
            return self.segments[index]
        return []

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancel_token: Any = None,
    ) -> AsyncIterator[StreamEvent]:
        index = len(self.calls)
        self.calls.append({"messages": [dict(message) for message in messages], "model": model, "tools": tools})
        for item in self._segment(index):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item
        yield StreamEvent.done()


def text_events(*chunks: str) -> list[StreamEvent]:
    return [StreamEvent.text_delta(chunk) for chunk in chunks]


def data_url(payload: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(payload).decode('ascii')}"


class FakeJobSource:
    """In-memory background job source.

    ``fetch_status`` walks ``snapshots`` and keeps returning the last one.
    ``push`` items are yielded by ``stream_updates``; exceptions are raised.
    """

    def __init__(
        self,
        snapshots: Iterable[BackgroundJobSnapshot] = (),
        *,
        push: Iterable[Any] = (),
        gate: asyncio.Event | None = None,
    ) -> None:
        self.snapshots = list(snapshots)
        self.push = list(push)
        self.gate = gate
        self.fetches: list[int] = []
        self.aborted: list[str] = []

    async def fetch_status(self, job_id: str, *, offset: int = 0) -> BackgroundJobSnapshot:
        self.fetches.append(offset)
        if self.gate is not None:
            await self.gate.wait()
        if not self.snapshots:
            return snapshot(job_id, BackgroundJobStatus.RUNNING)
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    async def stream_updates(self, job_id: str, *, offset: int = 0) -> AsyncIterator[BackgroundJobSnapshot]:
        for item in self.push:
            if isinstance(item, BaseException):
                raise item
            yield item

    async def abort(self, job_id: str) -> bool:
        self.aborted.append(job_id)
        return True


def snapshot(job_id: str, status: BackgroundJobStatus, content: str | None = None, **kwargs: Any) -> BackgroundJobSnapshot:
    return BackgroundJobSnapshot(job_id=job_id, status=status, content=content, **kwargs)


class HookRecorder:
    """Collects ``(hook, args)`` tuples for every hook it is attached to."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def attach(self, hooks: Any, *names: str) -> "HookRecorder":
        for name in names:
            hooks.add_action(name, self._recorder(name))
        return self

    def _recorder(self, name: str) -> Callable[..., None]:
        def record(*args: Any) -> None:
            self.calls.append((name, args))

        return record

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def payloads(self, name: str) -> list[Any]:
        return [args[0] if args else None for hook, args in self.calls if hook == name]
