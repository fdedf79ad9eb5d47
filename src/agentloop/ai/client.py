"""Async model backend built around OpenAI-compatible endpoints.

The conversation loop only needs a :class:`ChatBackend`: something that takes a
:class:`ChatRequest` and yields text fragments. :class:`AIClient` implements it
on top of ``openai.AsyncOpenAI`` and re-emits native tool-call deltas in the
inline ``function_call`` shape the detector understands.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Protocol

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import StreamError

__all__ = ["ChatRequest", "ChatBackend", "ClientSettings", "AIClient"]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ChatRequest:
    """Serialized request handed to a backend."""

    messages: List[Dict[str, Any]]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    temperature: float | None = None


class ChatBackend(Protocol):
    """Anything that turns a request into a stream of text fragments."""

    def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.2
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class _FunctionCallRenderer:
    """Turns streamed events into text, rendering the first tool call inline."""

    def __init__(self) -> None:
        self._call_index: int | None = None
        self._call_ids: Dict[int, str] = {}
        self._header_sent = False
        self._warned = False

    def render(self, event: Any) -> List[str]:
        event_type = getattr(event, "type", None)
        if event_type == "chunk":
            self._remember_call_ids(getattr(event, "chunk", None))
            return []
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if not delta_text:
                return []
            if self._header_sent:
                LOGGER.debug("Dropping content delta after function call started")
                return []
            return [str(delta_text)]
        if event_type == "tool_calls.function.arguments.delta":
            return self._render_arguments(event)
        return []

    def _render_arguments(self, event: Any) -> List[str]:
        index = getattr(event, "index", 0) or 0
        if self._call_index is None:
            self._call_index = index
        if index != self._call_index:
            if not self._warned:
                self._warned = True
                LOGGER.warning("Model requested parallel tool calls; only the first is dispatched")
            return []
        fragments: List[str] = []
        if not self._header_sent:
            self._header_sent = True
            fragments.append(self._header(index, getattr(event, "name", None) or ""))
        delta = getattr(event, "arguments_delta", None)
        if delta:
            fragments.append(str(delta))
        return fragments

    def _header(self, index: int, name: str) -> str:
        call_id = self._call_ids.get(index)
        id_part = f'"id": {json.dumps(call_id)}, ' if call_id else ""
        return f'"function_call" : {{{id_part}"name": {json.dumps(name)}, "arguments" :'

    def _remember_call_ids(self, chunk: Any) -> None:
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            for tool_call in getattr(delta, "tool_calls", None) or ():
                call_id = getattr(tool_call, "id", None)
                index = getattr(tool_call, "index", None)
                if call_id and index is not None:
                    self._call_ids.setdefault(index, call_id)


class AIClient:
    """Async client providing a fragment stream with retry semantics.

    Retries only happen before the first fragment was yielded; a failure later
    in the stream surfaces as :class:`StreamError` so the turn can keep the
    partial answer.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Stream text fragments for ``request``."""

        payload = self._build_chat_payload(request)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        emitted = False
        try:
            async for attempt in self._retrying():
                with attempt:
                    renderer = _FunctionCallRenderer()
                    try:
                        async with self._client.chat.completions.stream(**payload) as stream:
                            async for event in stream:
                                for fragment in renderer.render(event):
                                    emitted = True
                                    yield fragment
                    except _RETRYABLE_ERRORS as exc:
                        if emitted:
                            raise StreamError(f"Stream interrupted: {exc}", cause=exc) from exc
                        LOGGER.warning("Chat completion attempt failed: %s", exc)
                        raise
                    break
        except StreamError:
            raise
        except _RETRYABLE_ERRORS as exc:
            raise StreamError(f"Model request failed: {exc}", cause=exc) from exc

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _build_chat_payload(self, request: ChatRequest) -> Dict[str, Any]:
        if not request.messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [dict(message) for message in request.messages],
        }
        if request.tools:
            payload["tools"] = list(request.tools)
        temperature = request.temperature if request.temperature is not None else self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result
