"""Hook names emitted by the chat pipeline.

Names follow ``<domain>.<subject>:<kind>:<phase>``.
"""

from __future__ import annotations

# Send lifecycle
SEND_BEFORE = "ai.chat.send:action:before"
SEND_AFTER = "ai.chat.send:action:after"

# Streaming
STREAM_DELTA = "ai.chat.stream:action:delta"
STREAM_REASONING = "ai.chat.stream:action:reasoning"
STREAM_COMPLETE = "ai.chat.stream:action:complete"
STREAM_ERROR = "ai.chat.stream:action:error"
STREAM_TOOL_LIMIT = "ai.chat.stream:action:tool_limit"

# Tool loop
TOOL_BEFORE = "ai.chat.tool:action:before"
TOOL_AFTER = "ai.chat.tool:action:after"

# Retry / continue
RETRY_BEFORE = "ai.chat.retry:action:before"
RETRY_AFTER = "ai.chat.retry:action:after"
CONTINUE_BEFORE = "ai.chat.continue:action:before"
CONTINUE_AFTER = "ai.chat.continue:action:after"

# Background jobs
BACKGROUND_UPDATE = "ai.chat.background:action:update"
BACKGROUND_COMPLETE = "ai.chat.background:action:complete"
NOTIFY_PUSH = "notify:action:push"

# Filters
OUTGOING_MESSAGE_FILTER = "ui.chat.message:filter:outgoing"
INCOMING_MESSAGE_FILTER = "ui.chat.message:filter:incoming"
MODEL_SELECT_FILTER = "ai.chat.model:filter:select"
MESSAGES_INPUT_FILTER = "ai.chat.messages:filter:input"
MESSAGES_BEFORE_SEND_FILTER = "ai.chat.messages:filter:before_send"

__all__ = [
    "BACKGROUND_COMPLETE",
    "BACKGROUND_UPDATE",
    "CONTINUE_AFTER",
    "CONTINUE_BEFORE",
    "INCOMING_MESSAGE_FILTER",
    "MESSAGES_BEFORE_SEND_FILTER",
    "MESSAGES_INPUT_FILTER",
    "MODEL_SELECT_FILTER",
    "NOTIFY_PUSH",
    "OUTGOING_MESSAGE_FILTER",
    "RETRY_AFTER",
    "RETRY_BEFORE",
    "SEND_AFTER",
    "SEND_BEFORE",
    "STREAM_COMPLETE",
    "STREAM_DELTA",
    "STREAM_ERROR",
    "STREAM_REASONING",
    "STREAM_TOOL_LIMIT",
    "TOOL_AFTER",
    "TOOL_BEFORE",
]
