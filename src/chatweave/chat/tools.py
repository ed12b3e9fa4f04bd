"""Tool registry and executor adapter for the foreground tool loop.

The chat pipeline only knows ``name + JSON arguments in, text result or error
out``. Argument schemas are advertised to the model but not validated here.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union, runtime_checkable

from .errors import ToolExecutionError

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[Mapping[str, Any]], Union[Any, Awaitable[Any]]]


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolExecution:
    """Outcome of a single tool invocation.

    Attributes:
        result: Text result, or ``None`` when the call failed.
        tool_name: Name of the tool that was invoked.
        error: Failure description; its presence classifies the call as failed.
        timed_out: Whether the failure was a timeout.
        duration_ms: Wall time spent in the handler.
    """

    result: str | None
    tool_name: str
    error: str | None = None
    timed_out: bool = False
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_success(cls, tool_name: str, result: str, *, duration_ms: float = 0.0) -> "ToolExecution":
        return cls(result=result, tool_name=tool_name, duration_ms=duration_ms)

    @classmethod
    def from_error(
        cls,
        tool_name: str,
        error: str,
        *,
        timed_out: bool = False,
        duration_ms: float = 0.0,
    ) -> "ToolExecution":
        return cls(result=None, tool_name=tool_name, error=error, timed_out=timed_out, duration_ms=duration_ms)


@runtime_checkable
class ToolExecutor(Protocol):
    """Capability consumed by the foreground session."""

    async def execute_tool(self, name: str, args_json: str) -> ToolExecution:
        ...


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """A registered tool and the schema advertised to the model."""

    name: str
    handler: ToolHandler
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    timeout: float | None = None

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters),
            },
        }


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for tool execution.

    Attributes:
        default_timeout: Timeout in seconds applied when a tool sets none.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False
    log_results: bool = False


class ToolRegistry:
    """Holds tool handlers and executes them by name.

    Handlers receive the decoded argument mapping and may be sync or async.
    Non-string results are JSON encoded. Failures never raise out of
    :meth:`execute_tool`; they are returned as :class:`ToolExecution` errors.
    """

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self._config = config or ExecutorConfig()
        self._tools: dict[str, ToolDefinition] = {}

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolDefinition:
        if not name:
            raise ValueError("Tool name is required")
        definition = ToolDefinition(
            name=name,
            handler=handler,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            timeout=timeout,
        )
        if name in self._tools:
            LOGGER.debug("Replacing registered tool %s", name)
        self._tools[name] = definition
        return definition

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def openai_tools(self) -> list[dict[str, Any]]:
        return [definition.to_openai_tool() for definition in self._tools.values()]

    async def execute_tool(self, name: str, args_json: str) -> ToolExecution:
        definition = self._tools.get(name)
        if definition is None:
            LOGGER.warning("Tool %s is not registered", name)
            return ToolExecution.from_error(name, f'Tool "{name}" is not registered.')

        try:
            arguments = _decode_arguments(args_json)
        except ValueError as exc:
            return ToolExecution.from_error(name, str(exc))

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s with arguments: %s", name, arguments)
        else:
            LOGGER.debug("Executing tool %s", name)

        timeout = definition.timeout if definition.timeout is not None else self._config.default_timeout
        start_time = time.perf_counter()
        try:
            pending = _invoke(definition.handler, arguments)
            if timeout is not None and timeout > 0:
                raw = await asyncio.wait_for(pending, timeout=timeout)
            else:
                raw = await pending
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s timed out after %.1fms", name, duration_ms)
            timeout_ms = int(round((timeout or 0) * 1000))
            return ToolExecution.from_error(
                name,
                f"Tool execution timed out after {timeout_ms}ms.",
                timed_out=True,
                duration_ms=duration_ms,
            )
        except ToolExecutionError as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.info("Tool %s reported an error: %s", name, exc)
            return ToolExecution.from_error(name, str(exc) or type(exc).__name__, duration_ms=duration_ms)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            return ToolExecution.from_error(name, str(exc) or type(exc).__name__, duration_ms=duration_ms)

        duration_ms = (time.perf_counter() - start_time) * 1000
        result = _stringify(raw)
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", name, duration_ms, result)
        else:
            LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return ToolExecution.from_success(name, result, duration_ms=duration_ms)


def _decode_arguments(args_json: str | None) -> Mapping[str, Any]:
    if not args_json or not args_json.strip():
        return {}
    try:
        decoded = json.loads(args_json)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON arguments: {exc.msg}") from exc
    if not isinstance(decoded, Mapping):
        raise ValueError("Tool arguments must be a JSON object")
    return decoded


async def _invoke(handler: ToolHandler, arguments: Mapping[str, Any]) -> Any:
    result = handler(arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


__all__ = [
    "ExecutorConfig",
    "ToolDefinition",
    "ToolExecution",
    "ToolExecutor",
    "ToolHandler",
    "ToolRegistry",
]
