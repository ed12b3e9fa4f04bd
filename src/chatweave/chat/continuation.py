"""Resume a partial assistant reply from its own tail."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Mapping

from ..hooks import keys
from .errors import ChatError, ErrorCode
from .files import parse_file_hashes
from .foreground import ForegroundStreamSession
from .message_build import build_messages_for_send, compose_system_prompt, message_to_chat, resolve_system_prompt_text
from .persistence import update_message_record
from .types import StreamOutcome, new_id

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .session import ChatSession

LOGGER = logging.getLogger(__name__)

CONTINUATION_PREFIX = ">>"

_CONTINUE_SYSTEM_PREFIX = " ".join(
    [
        "First and foremost, you are a text autocomplete engine.",
        "You will be given the end of a text stream.",
        "Output only the exact continuation with matching tone, voice, and formatting.",
        "Never repeat the provided context.",
        "Never add commentary, apologies, or meta statements.",
        "Assume the context ends at a valid character boundary.",
        "Do not extend or retype the final word unless it is clearly incomplete.",
        "Decide whether the very next character should be punctuation, a space, or a letter.",
        'If a sentence should end, start with the correct punctuation (e.g. ".", "?", "!") before continuing.',
    ]
)

_NO_SPACE_AFTER = frozenset("([{<«“‘\"'`/\\-–—")
_NO_SPACE_BEFORE = frozenset(",.…;:!?%)]}>»”’\"'`")
_CLOSING_PUNCTUATION = frozenset(")]}>\"'»”’")
_SENTENCE_PUNCTUATION = frozenset(".!?;:…")


def build_continuation_prompt(tail: str) -> str:
    """User turn asking the model to continue ``tail`` verbatim."""

    if not tail:
        return "Please continue your previous response from where you left off."
    return "\n".join(
        [
            "You are a text recovery engine. Your only task is to continue the text stream seamlessly.",
            "",
            "CONTEXT (the previous assistant output ends exactly here):",
            "<<CONTEXT>>",
            tail,
            "<<END CONTEXT>>",
            "",
            "INSTRUCTIONS:",
            "1. Continue immediately from the last character in the context.",
            "2. Assume the context ends at a valid character boundary.",
            "3. Do not extend or retype the final word unless it is clearly incomplete.",
            "4. Decide whether the next character should be punctuation, a space, or a letter, and start with that.",
            "5. If a sentence should end, emit the punctuation first, then continue.",
            "6. Do not repeat any of the context.",
            "7. Do not add any conversational filler or meta commentary.",
            f'8. Start your response with "{CONTINUATION_PREFIX}" and then the continuation.',
        ]
    )


def build_continuation_system_prompt(system_text: str | None) -> str:
    if system_text and system_text.strip():
        return f"{_CONTINUE_SYSTEM_PREFIX}\n\n{system_text.strip()}"
    return _CONTINUE_SYSTEM_PREFIX


def needs_boundary_space(previous: str, following: str) -> bool:
    """Whether a space belongs between the end of ``previous`` and ``following``."""

    if not previous or not following:
        return False
    if previous[-1].isspace() or following[0].isspace():
        return False
    last = previous[-1]
    first = following[0]
    if last in _NO_SPACE_AFTER or first in _NO_SPACE_BEFORE:
        return False
    if not first.isalnum():
        return False
    return last.isalnum() or last in _SENTENCE_PUNCTUATION or last in _CLOSING_PUNCTUATION


class ContinuationTextTransform:
    """Strips the leading continuation marker and fixes the seam once.

    Deltas are buffered until enough text has arrived to decide whether the
    stream started with the marker; the first emitted delta gets a boundary
    space when the existing draft and the new text would otherwise run
    together.
    """

    def __init__(self, prefix: str = CONTINUATION_PREFIX) -> None:
        self._prefix = prefix
        self._buffer = ""
        self._stripping = True
        self._seam_fixed = False

    def __call__(self, current_text: str, delta: str) -> str:
        if self._stripping:
            self._buffer += delta
            if len(self._buffer) < len(self._prefix):
                return ""
            if self._buffer.startswith(self._prefix):
                self._buffer = self._buffer[len(self._prefix):]
            self._stripping = False
            delta, self._buffer = self._buffer, ""
        if not delta:
            return ""
        if not self._seam_fixed:
            self._seam_fixed = True
            if needs_boundary_space(current_text, delta):
                return f" {delta}"
        return delta


def _keep_chat(chat: Mapping[str, Any]) -> bool:
    if chat.get("role") != "assistant":
        return True
    content = chat.get("content")
    if isinstance(content, str):
        return bool(content.strip()) or bool(parse_file_hashes(chat.get("file_hashes")))
    if isinstance(content, list):
        return any(
            part.get("type") != "text" or str(part.get("text", "")).strip()
            for part in content
            if isinstance(part, Mapping)
        )
    return True


async def continue_message(
    session: "ChatSession",
    message_id: str,
    model_override: str | None = None,
) -> StreamOutcome | None:
    """Continue the assistant draft ``message_id`` and append to its content.

    Returns the stream outcome, or ``None`` when nothing was continued or the
    continuation failed (failures are reported, not raised).
    """

    if session.busy:
        LOGGER.debug("Ignoring continue for %s while a stream is active", message_id)
        return None

    store = session.store
    hooks = session.hooks
    try:
        target = await store.get_message(message_id)
        if target is None or target.deleted or target.role != "assistant":
            return None
        existing_text = target.content
        if not existing_text:
            return None
        thread_id = target.thread_id

        history = await store.query_thread(thread_id, end=target.index + 1)
        chats = [message_to_chat(message) for message in history]
        tail = existing_text[-session.continue_tail_chars:]
        chats.append(
            {
                "id": f"continue-{new_id()}",
                "role": "user",
                "content": build_continuation_prompt(tail),
            }
        )
        thread_prompt = await resolve_system_prompt_text(store, thread_id, active_prompt=session.active_prompt)
        system_text = build_continuation_system_prompt(compose_system_prompt(session.master_prompt, thread_prompt))
        chats.insert(0, {"id": f"system-{new_id()}", "role": "system", "content": system_text})

        filtered = await hooks.apply_filters(keys.MESSAGES_INPUT_FILTER, chats)
        chats = [chat for chat in (filtered if isinstance(filtered, list) else []) if _keep_chat(chat)]
        wire = await build_messages_for_send(chats, store=store)
        wire = await session.apply_before_send(wire)
        model = await session.select_model(model_override)

        assistant = replace(target, pending=True, error=None, stream_id=new_id())
        await hooks.do_action(
            keys.CONTINUE_BEFORE,
            {"thread_id": thread_id, "message_id": target.id, "model": model, "tail_length": len(tail)},
        )

        token = session.begin_stream()
        stream = ForegroundStreamSession(
            transport=session.transport,
            store=store,
            hooks=hooks,
            assistant=assistant,
            messages=wire,
            model=model,
            cancel_token=token,
            config=session.stream_config,
            materializer=session.materializer,
            text_transform=ContinuationTextTransform(),
            initial_text=existing_text,
            initial_reasoning=target.reasoning_text or "",
            initial_hashes=parse_file_hashes(target.file_hashes),
            clock=session.clock,
            reporter=session.reporter,
        )
        try:
            try:
                outcome = await stream.run()
            except Exception as exc:
                state = stream.state
                await stream.persister(
                    content=state.text,
                    reasoning=state.reasoning or None,
                    finalize=True,
                )
                await update_message_record(store, target.id, {"error": "stream_interrupted"})
                session.reporter.report(
                    ChatError.wrap(
                        exc,
                        ErrorCode.STREAM_FAILURE,
                        tags={
                            "domain": "chat",
                            "thread_id": thread_id,
                            "stream_id": state.stream_id,
                            "model": model or "",
                            "stage": "continue",
                        },
                    )
                )
                await session.refresh_cached(target.id)
                return None

            await stream.persister(
                content=outcome.content,
                reasoning=outcome.reasoning or None,
                finalize=True,
            )
            await update_message_record(store, target.id, {"error": None})
        finally:
            session.end_stream(token)

        await session.refresh_cached(target.id)
        await hooks.do_action(
            keys.CONTINUE_AFTER,
            {
                "thread_id": thread_id,
                "message_id": target.id,
                "status": outcome.status.value,
                "total_length": outcome.total_length,
                "appended_length": outcome.total_length - len(existing_text),
            },
        )
        return outcome
    except Exception as exc:
        session.reporter.report(
            ChatError.wrap(
                exc,
                ErrorCode.INTERNAL,
                message=f"continue_message failed: {exc}",
                tags={"domain": "chat", "op": "continue_message"},
            )
        )
        return None


__all__ = [
    "CONTINUATION_PREFIX",
    "ContinuationTextTransform",
    "build_continuation_prompt",
    "build_continuation_system_prompt",
    "continue_message",
    "needs_boundary_space",
]
