"""Regenerate a user/assistant exchange."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..hooks import keys
from .errors import ChatError, ErrorCode
from .files import parse_file_hashes

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .session import ChatSession

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RetryResult:
    thread_id: str
    original_user_id: str
    original_assistant_id: str | None
    new_user_id: str | None
    new_assistant_id: str | None


async def retry_message(
    session: "ChatSession",
    message_id: str,
    model_override: str | None = None,
) -> RetryResult | None:
    """Delete the exchange containing ``message_id`` and send its user text again.

    ``message_id`` may name the user message or its assistant reply. The pair
    is removed in one store transaction before the resend. If the resend
    fails after the delete, the original exchange is not restored; the
    failure is reported and ``None`` is returned.
    """

    if session.busy:
        LOGGER.debug("Ignoring retry for %s while a stream is active", message_id)
        return None

    store = session.store
    hooks = session.hooks
    try:
        target = await store.get_message(message_id)
        if target is None or target.deleted:
            return None
        thread_id = target.thread_id

        if target.role == "user":
            user = target
        elif target.role == "assistant":
            earlier = await store.query_thread(thread_id, end=target.index)
            user = next((m for m in reversed(earlier) if m.role == "user"), None)
        else:
            return None
        if user is None:
            LOGGER.debug("No user message precedes %s; nothing to retry", message_id)
            return None

        later = await store.query_thread(thread_id, start=user.index + 1)
        assistant = next((m for m in later if m.role == "assistant"), None)

        if assistant is not None and session.tail_assistant_id == assistant.id:
            session.tail_assistant_id = None
        elif target.role == "assistant" and session.tail_assistant_id == target.id:
            session.tail_assistant_id = None

        original_assistant_id = assistant.id if assistant is not None else None
        await hooks.do_action(
            keys.RETRY_BEFORE,
            {
                "thread_id": thread_id,
                "original_user_id": user.id,
                "original_assistant_id": original_assistant_id,
                "triggered_by": target.role,
            },
        )

        text = user.content
        hashes = parse_file_hashes(user.file_hashes)

        await session.reconcile_thread(thread_id)
        doomed = [user.id] if assistant is None else [user.id, assistant.id]
        await store.delete_messages(doomed)
        session.forget_messages(thread_id, doomed)

        result = await session.send_message(thread_id, text, file_hashes=hashes, model=model_override)
        new_user_id = result.user_id if result is not None else None
        new_assistant_id = result.assistant_id if result is not None else None

        await hooks.do_action(
            keys.RETRY_AFTER,
            {
                "thread_id": thread_id,
                "original_user_id": user.id,
                "original_assistant_id": original_assistant_id,
                "new_user_id": new_user_id,
                "new_assistant_id": new_assistant_id,
            },
        )
        return RetryResult(
            thread_id=thread_id,
            original_user_id=user.id,
            original_assistant_id=original_assistant_id,
            new_user_id=new_user_id,
            new_assistant_id=new_assistant_id,
        )
    except Exception as exc:
        session.reporter.report(
            ChatError.wrap(
                exc,
                ErrorCode.INTERNAL,
                message=f"retry_message failed: {exc}",
                tags={"domain": "chat", "op": "retry_message"},
            )
        )
        return None


__all__ = ["RetryResult", "retry_message"]
