"""Streaming client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..chat.types import StreamEvent, new_id

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..chat.foreground import CancellationToken

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the streaming client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    temperature: float | None = None
    debug_logging: bool = False


class ChatStreamClient:
    """Turns chat completion streams into normalized :class:`StreamEvent` objects.

    Text deltas, reasoning deltas (``delta.reasoning`` on providers that send
    it), generated images (``delta.images``) and completed tool calls are
    emitted in arrival order, followed by a single ``done`` event. Transient
    failures are retried with exponential backoff only while nothing has been
    yielded yet; once output has reached the caller, errors propagate.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        cancel_token: "CancellationToken | None" = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._build_chat_payload(messages, model=model, tools=tools)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        emitted = False
        async for attempt in self._retrying(lambda: not emitted):
            with attempt:
                tool_ids: dict[int, str] = {}
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for event in stream:
                        if cancel_token is not None and cancel_token.cancelled:
                            LOGGER.debug("Chat stream cancelled: %s", cancel_token.reason)
                            return
                        for normalized in self._normalize_stream_event(event, tool_ids):
                            emitted = True
                            yield normalized
                yield StreamEvent.done()
                break

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self, may_retry: Any) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS) & retry_if_exception(lambda _exc: may_retry()),
        )

    def _build_chat_payload(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None,
        tools: Sequence[Mapping[str, Any]] | None,
    ) -> Dict[str, Any]:
        normalized: List[Dict[str, Any]] = [dict(message) for message in messages]
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": normalized,
        }
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _normalize_stream_event(self, event: Any, tool_ids: dict[int, str]) -> List[StreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            return [StreamEvent.text_delta(str(delta_text))] if delta_text else []
        if event_type == "chunk":
            return self._normalize_chunk(getattr(event, "chunk", None), tool_ids)
        if event_type == "tool_calls.function.arguments.done":
            index = getattr(event, "index", 0) or 0
            call_id = tool_ids.get(index) or f"call_{new_id()}"
            return [
                StreamEvent.tool(
                    call_id,
                    getattr(event, "name", "") or "",
                    getattr(event, "arguments", None) or "{}",
                )
            ]
        return []

    def _normalize_chunk(self, chunk: Any, tool_ids: dict[int, str]) -> List[StreamEvent]:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return []
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return []
        events: List[StreamEvent] = []
        for call in getattr(delta, "tool_calls", None) or []:
            call_id = _field(call, "id")
            if call_id:
                tool_ids[_field(call, "index") or 0] = str(call_id)
        reasoning = _field(delta, "reasoning") or _field(delta, "reasoning_content")
        if isinstance(reasoning, str) and reasoning:
            events.append(StreamEvent.reasoning_delta(reasoning))
        for position, image in enumerate(_field(delta, "images") or []):
            url = _field(_field(image, "image_url"), "url") or _field(image, "url")
            if isinstance(url, str) and url:
                events.append(StreamEvent.image(url, _field(image, "index") or position))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def _field(value: Any, name: str) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(name)
    found = getattr(value, name, None)
    if found is None:
        extra = getattr(value, "model_extra", None)
        if isinstance(extra, Mapping):
            return extra.get(name)
    return found


__all__ = ["ChatStreamClient", "ClientSettings"]
