"""Tests for the foreground stream session."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from chatweave.chat.errors import ErrorCode, ErrorReporter
from chatweave.chat.files import parse_file_hashes
from chatweave.chat.foreground import (
    CancellationToken,
    ForegroundStreamSession,
    StreamConfig,
    StreamPhase,
    summarize_tool_result,
)
from chatweave.chat.tools import ToolRegistry
from chatweave.chat.types import StoredMessage, StreamEvent, StreamStatus
from chatweave.hooks import HookEngine, keys
from chatweave.storage.memory import InMemoryMessageStore

from tests.helpers import HookRecorder, ScriptedTransport, data_url, text_events


def _session(
    transport: ScriptedTransport,
    store: InMemoryMessageStore,
    hooks: HookEngine,
    draft: StoredMessage,
    **kwargs: Any,
) -> ForegroundStreamSession:
    kwargs.setdefault("messages", [{"role": "user", "content": "hi"}])
    return ForegroundStreamSession(transport=transport, store=store, hooks=hooks, assistant=draft, **kwargs)


async def _tool_rows(store: InMemoryMessageStore, thread_id: str) -> list[StoredMessage]:
    return [row for row in await store.query_thread(thread_id) if row.role == "tool"]


@pytest.mark.asyncio
async def test_plain_text_stream_completes(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    transport = ScriptedTransport(text_events("Hel", "lo"))
    session = _session(transport, store, hooks, draft, model="demo-model")

    outcome = await session.run()

    assert outcome.status is StreamStatus.COMPLETE
    assert outcome.content == "Hello"
    assert outcome.iterations == 1
    assert outcome.chunk_count == 2
    assert session.phase is StreamPhase.FINALIZED
    assert transport.calls[0]["model"] == "demo-model"
    stored = await store.get_message(draft.id)
    assert stored is not None and stored.content == "Hello"


@pytest.mark.asyncio
async def test_delta_and_reasoning_hooks(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    recorder = HookRecorder().attach(hooks, keys.STREAM_DELTA, keys.STREAM_REASONING)
    transport = ScriptedTransport([StreamEvent.reasoning_delta("think"), *text_events("ab", "c")])

    outcome = await _session(transport, store, hooks, draft).run()

    deltas = [args for name, args in recorder.calls if name == keys.STREAM_DELTA]
    assert [args[0] for args in deltas] == ["ab", "c"]
    assert deltas[1][1] == {
        "thread_id": draft.thread_id,
        "assistant_id": draft.id,
        "stream_id": "stream-1",
        "delta_length": 1,
        "total_length": 3,
        "chunk_index": 2,
    }
    assert recorder.payloads(keys.STREAM_REASONING) == ["think"]
    assert outcome.reasoning == "think"
    stored = await store.get_message(draft.id)
    assert stored is not None and stored.reasoning_text == "think"


@pytest.mark.asyncio
async def test_tool_loop_stops_at_iteration_cap(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()
    registry.register("lookup", lambda _args: "ok")
    transport = ScriptedTransport(factory=lambda index: [StreamEvent.tool(f"call-{index}", "lookup", "{}")])
    session = _session(transport, store, hooks, draft, tools=registry, tool_specs=registry.openai_tools())

    outcome = await session.run()

    assert outcome.status is StreamStatus.TOOL_LIMIT
    assert outcome.iterations == 10
    assert len(transport.calls) == 10
    assert len(outcome.tool_calls) == 10
    assert all(call.status == "complete" for call in outcome.tool_calls)
    assert len(await _tool_rows(store, draft.thread_id)) == 10
    stored = await store.get_message(draft.id)
    assert stored is not None and len(stored.data["tool_calls"]) == 10


@pytest.mark.asyncio
async def test_tool_results_feed_next_iteration(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()
    registry.register("lookup", lambda args: {"answer": args["q"] * 2})
    recorder = HookRecorder().attach(hooks, keys.TOOL_BEFORE, keys.TOOL_AFTER)
    transport = ScriptedTransport(
        [StreamEvent.text_delta("Checking. "), StreamEvent.tool("call-1", "lookup", '{"q": 21}')],
        text_events("It is 42."),
    )
    session = _session(transport, store, hooks, draft, tools=registry)

    outcome = await session.run()

    assert outcome.status is StreamStatus.COMPLETE
    assert outcome.iterations == 2
    assert outcome.content == "Checking. It is 42."
    second = transport.calls[1]["messages"]
    assert second[-2] == {
        "role": "assistant",
        "content": "Checking. ",
        "tool_calls": [{"id": "call-1", "type": "function", "function": {"name": "lookup", "arguments": '{"q": 21}'}}],
    }
    assert second[-1] == {"role": "tool", "tool_call_id": "call-1", "name": "lookup", "content": '{"answer": 42}'}
    assert recorder.names() == [keys.TOOL_BEFORE, keys.TOOL_AFTER]
    assert recorder.payloads(keys.TOOL_AFTER)[0]["status"] == "complete"
    rows = await _tool_rows(store, draft.thread_id)
    assert rows[0].data["tool_call_id"] == "call-1"
    assert rows[0].content == '{"answer": 42}'


@pytest.mark.asyncio
async def test_tool_failure_becomes_error_result(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()

    def broken(_args: Mapping[str, Any]) -> str:
        raise RuntimeError("boom")

    registry.register("lookup", broken)
    transport = ScriptedTransport([StreamEvent.tool("call-1", "lookup", "{}")], text_events("Sorry."))

    reporter = ErrorReporter()
    outcome = await _session(transport, store, hooks, draft, tools=registry, reporter=reporter).run()

    assert outcome.status is StreamStatus.COMPLETE
    assert outcome.tool_calls[0].status == "error"
    assert outcome.tool_calls[0].error == "boom"
    assert transport.calls[1]["messages"][-1]["content"] == 'Error executing tool "lookup": boom'
    reported = reporter.last()
    assert reported is not None
    assert reported.code == ErrorCode.TOOL_FAILURE
    assert reported.tags["tool_call_id"] == "call-1"


@pytest.mark.asyncio
async def test_repeated_tool_call_id_runs_once_with_latest_arguments(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()
    seen: list[Mapping[str, Any]] = []

    def lookup(args: Mapping[str, Any]) -> str:
        seen.append(dict(args))
        return "found"

    registry.register("lookup", lookup)
    transport = ScriptedTransport(
        [StreamEvent.tool("call_0", "lookup", '{"q": 1}'), StreamEvent.tool("call_0", "lookup", '{"q": 2}')],
        text_events("done"),
    )

    outcome = await _session(transport, store, hooks, draft, tools=registry).run()

    assert outcome.status is StreamStatus.COMPLETE
    assert outcome.content == "done"
    assert seen == [{"q": 2}]
    assert [call.status for call in outcome.tool_calls] == ["complete"]
    assert len(await _tool_rows(store, draft.thread_id)) == 1
    assert [m["tool_call_id"] for m in transport.calls[1]["messages"] if m["role"] == "tool"] == ["call_0"]


@pytest.mark.asyncio
async def test_later_iteration_failure_keeps_tool_turns(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()
    registry.register("lookup", lambda _args: "found")
    transport = ScriptedTransport(
        [StreamEvent.text_delta("Checking. "), StreamEvent.tool("call-1", "lookup", "{}")],
        [StreamEvent.text_delta("Then"), RuntimeError("connection reset")],
    )
    session = _session(transport, store, hooks, draft, tools=registry)

    with pytest.raises(RuntimeError, match="connection reset"):
        await session.run()

    assert session.phase is StreamPhase.ERROR
    assert session.state.iteration == 2
    rows = await _tool_rows(store, draft.thread_id)
    assert [row.data["tool_call_id"] for row in rows] == ["call-1"]
    stored = await store.get_message(draft.id)
    assert stored is not None
    assert [call["id"] for call in stored.data["tool_calls"]] == ["call-1"]
    assert stored.data["tool_calls"][0]["status"] == "complete"


@pytest.mark.asyncio
async def test_tool_call_without_executor(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    transport = ScriptedTransport([StreamEvent.tool("call-1", "lookup", "{}")])

    outcome = await _session(transport, store, hooks, draft).run()

    rows = await _tool_rows(store, draft.thread_id)
    assert rows[0].content == 'Error executing tool "lookup": Tool "lookup" is not registered.'
    assert outcome.tool_calls[0].error == 'Tool "lookup" is not registered.'


@pytest.mark.asyncio
async def test_large_tool_results_are_summarized_for_display(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    registry = ToolRegistry()
    registry.register("dump", lambda _args: "x" * 2048)
    transport = ScriptedTransport([StreamEvent.tool("call-1", "dump", "{}")])

    await _session(transport, store, hooks, draft, tools=registry).run()

    rows = await _tool_rows(store, draft.thread_id)
    assert rows[0].content.startswith("Tool result (2KB): ")
    assert rows[0].content.endswith("... [truncated for display]")
    assert transport.calls[1]["messages"][-1]["content"] == "x" * 2048


def test_summarize_tool_result_threshold() -> None:
    assert summarize_tool_result("short") == "short"
    assert summarize_tool_result("y" * 600, threshold=500, preview_chars=3) == "Tool result (1KB): yyy... [truncated for display]"


@pytest.mark.asyncio
async def test_image_cap(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    images = [StreamEvent.image(data_url(f"image-{n}".encode()), n) for n in range(8)]
    transport = ScriptedTransport(images)

    outcome = await _session(transport, store, hooks, draft).run()

    assert len(outcome.file_hashes) == 6
    stored = await store.get_message(draft.id)
    assert stored is not None
    assert parse_file_hashes(stored.file_hashes) == list(outcome.file_hashes)
    assert stored.content.count("![file-hash:") == 6


@pytest.mark.asyncio
async def test_duplicate_and_failed_images(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    url = data_url(b"same")
    transport = ScriptedTransport(
        [StreamEvent.image(url), StreamEvent.image(url), StreamEvent.image("data:image/png;base64,")]
    )

    reporter = ErrorReporter()
    outcome = await _session(transport, store, hooks, draft, reporter=reporter).run()

    assert len(outcome.file_hashes) == 1
    assert outcome.content.count("![file-hash:") == 1
    assert "![generated image](data:image/png;base64,)" in outcome.content
    assert [error.code for error in reporter.history()] == [ErrorCode.ATTACHMENT]


@pytest.mark.asyncio
async def test_chunk_count_triggers_persist(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    transport = ScriptedTransport(text_events(*["x"] * 137))
    session = _session(transport, store, hooks, draft, clock=lambda: 0.0)

    outcome = await session.run()

    assert outcome.chunk_count == 137
    # Chunks 0, 50 and 100 plus the final flush
    assert session.persister.write_count == 4
    stored = await store.get_message(draft.id)
    assert stored is not None and stored.content == "x" * 137


@pytest.mark.asyncio
async def test_elapsed_time_triggers_persist(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    ticks = iter(float(n) for n in range(100))
    transport = ScriptedTransport(text_events("a", "b", "c"))
    session = _session(transport, store, hooks, draft, clock=lambda: next(ticks))

    await session.run()

    # Every chunk is a second apart; the final flush finds nothing new
    assert session.persister.write_count == 3


@pytest.mark.asyncio
async def test_first_iteration_failure_propagates(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    transport = ScriptedTransport([StreamEvent.text_delta("Hi"), RuntimeError("network down")])
    session = _session(transport, store, hooks, draft)

    with pytest.raises(RuntimeError, match="network down"):
        await session.run()

    assert session.phase is StreamPhase.ERROR
    assert session.state.text == "Hi"


@pytest.mark.asyncio
async def test_cancel_from_hook_aborts(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    token = CancellationToken()
    hooks.add_action(keys.STREAM_DELTA, lambda _delta: token.cancel("user"))
    transport = ScriptedTransport(text_events("Hel", "lo", " world"))

    outcome = await _session(transport, store, hooks, draft, cancel_token=token).run()

    assert outcome.status is StreamStatus.ABORTED
    assert outcome.content == "Hel"
    assert token.reason == "user"


@pytest.mark.asyncio
async def test_cancel_interrupts_blocked_read(
    store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage
) -> None:
    gate = asyncio.Event()
    transport = ScriptedTransport([StreamEvent.text_delta("Hel"), gate, StreamEvent.text_delta("lo")])
    session = _session(transport, store, hooks, draft)

    task = asyncio.create_task(session.run())
    while session.state.text != "Hel":
        await asyncio.sleep(0)
    session.cancel_token.cancel()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.status is StreamStatus.ABORTED
    assert outcome.content == "Hel"
    stored = await store.get_message(draft.id)
    assert stored is not None and stored.content == "Hel"


@pytest.mark.asyncio
async def test_initial_state_is_continued(store: InMemoryMessageStore, hooks: HookEngine, draft: StoredMessage) -> None:
    transport = ScriptedTransport(text_events(" more"))
    config = StreamConfig(max_images=2)
    session = _session(
        transport,
        store,
        hooks,
        draft,
        config=config,
        initial_text="Some",
        initial_reasoning="plan",
        initial_hashes=["a", "b", "c"],
    )

    outcome = await session.run()

    assert outcome.content == "Some more"
    assert outcome.reasoning == "plan"
    assert outcome.file_hashes == ("a", "b")
