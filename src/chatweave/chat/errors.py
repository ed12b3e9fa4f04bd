"""Error types and the shared reporting facility for chat orchestration.

Orchestration flows (send, retry, continue) catch failures, normalize them into
:class:`ChatError` and hand them to an :class:`ErrorReporter` instead of raising
to callers. Tool failures are contained per call and never reach the reporter
unless a caller chooses to forward them.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Mapping

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes attached to reported chat errors."""

    INTERNAL = "ERR_INTERNAL"
    STREAM_FAILURE = "ERR_STREAM_FAILURE"
    TOOL_FAILURE = "ERR_TOOL_FAILURE"
    ATTACHMENT = "ERR_ATTACHMENT"


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


@dataclass(eq=False)
class ChatError(Exception):
    """Normalized orchestration failure.

    Attributes:
        code: One of the :class:`ErrorCode` constants.
        message: Human-readable description.
        tags: Structured context such as ``{"domain": "chat", "op": "retry_message"}``.
        cause: Original exception, when the error wraps one.
    """

    code: str
    message: str
    tags: dict[str, str] = field(default_factory=dict)
    cause: BaseException | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.tags:
            payload["tags"] = dict(self.tags)
        if self.cause is not None:
            payload["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return payload

    @classmethod
    def wrap(
        cls,
        exc: BaseException,
        code: str = ErrorCode.INTERNAL,
        *,
        message: str | None = None,
        tags: Mapping[str, str] | None = None,
    ) -> "ChatError":
        if isinstance(exc, ChatError):
            if tags:
                exc.tags.update(tags)
            return exc
        return cls(code=code, message=message or str(exc) or type(exc).__name__, tags=dict(tags or {}), cause=exc)


class ToolExecutionError(RuntimeError):
    """Raised by tool handlers to signal a failure with a model-facing message."""


# -----------------------------------------------------------------------------
# Reporter
# -----------------------------------------------------------------------------


class ErrorReporter:
    """Logs reported errors and keeps a bounded history for inspection."""

    def __init__(self, *, capacity: int = 100) -> None:
        self._history: Deque[ChatError] = deque(maxlen=max(1, capacity))

    def report(self, error: ChatError, *, silent: bool = False) -> ChatError:
        self._history.append(error)
        log = LOGGER.debug if silent else LOGGER.warning
        log("Chat error reported: %s tags=%s", error, error.tags or {}, exc_info=error.cause)
        return error

    def history(self) -> list[ChatError]:
        return list(self._history)

    def last(self) -> ChatError | None:
        return self._history[-1] if self._history else None

    def clear(self) -> None:
        self._history.clear()


__all__ = [
    "ChatError",
    "ErrorCode",
    "ErrorReporter",
    "ToolExecutionError",
]
