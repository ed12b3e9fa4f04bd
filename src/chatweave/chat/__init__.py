"""Chat reply orchestration: streaming, tools, persistence and background jobs."""

from .types import (
    PromptRecord,
    StoredFile,
    StoredMessage,
    StreamEvent,
    StreamOutcome,
    StreamStatus,
    ThreadRecord,
    ToolCall,
    ToolCallRecord,
    new_id,
)
from .errors import ChatError, ErrorCode, ErrorReporter, ToolExecutionError
from .files import (
    MAX_MESSAGE_FILE_HASHES,
    AttachmentMaterializer,
    content_hash,
    parse_file_hashes,
    serialize_file_hashes,
)
from .persistence import AssistantPersister, update_message_record
from .tools import ExecutorConfig, ToolDefinition, ToolExecution, ToolExecutor, ToolRegistry
from .message_build import (
    build_messages_for_send,
    build_system_prompt_message,
    compose_system_prompt,
    message_to_chat,
    resolve_system_prompt_text,
)
from .foreground import (
    CancellationToken,
    ForegroundStreamSession,
    StreamConfig,
    StreamPhase,
    StreamTransport,
)
from .background import (
    BackgroundConfig,
    BackgroundJobRegistry,
    BackgroundJobSnapshot,
    BackgroundJobSource,
    BackgroundJobStatus,
    BackgroundJobSubscriber,
    BackgroundJobTracker,
    BackgroundJobUpdate,
)
from .retry import RetryResult
from .continuation import ContinuationTextTransform
from .session import ChatSession, SendResult

__all__ = [
    "AssistantPersister",
    "AttachmentMaterializer",
    "BackgroundConfig",
    "BackgroundJobRegistry",
    "BackgroundJobSnapshot",
    "BackgroundJobSource",
    "BackgroundJobStatus",
    "BackgroundJobSubscriber",
    "BackgroundJobTracker",
    "BackgroundJobUpdate",
    "CancellationToken",
    "ChatError",
    "ChatSession",
    "ContinuationTextTransform",
    "ErrorCode",
    "ErrorReporter",
    "ExecutorConfig",
    "ForegroundStreamSession",
    "MAX_MESSAGE_FILE_HASHES",
    "PromptRecord",
    "RetryResult",
    "SendResult",
    "StoredFile",
    "StoredMessage",
    "StreamConfig",
    "StreamEvent",
    "StreamOutcome",
    "StreamPhase",
    "StreamStatus",
    "StreamTransport",
    "ThreadRecord",
    "ToolCall",
    "ToolCallRecord",
    "ToolDefinition",
    "ToolExecution",
    "ToolExecutionError",
    "ToolExecutor",
    "ToolRegistry",
    "build_messages_for_send",
    "build_system_prompt_message",
    "compose_system_prompt",
    "content_hash",
    "message_to_chat",
    "new_id",
    "parse_file_hashes",
    "resolve_system_prompt_text",
    "serialize_file_hashes",
    "update_message_record",
]
