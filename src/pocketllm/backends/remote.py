"""OpenAI-compatible HTTP backend streaming over server-sent events."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence, Set
from urllib.parse import urlparse

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..chat.models import GenerationParams, ServerProfile
from ..errors import BackendUnavailable
from .base import StreamAccumulator
from .events import Complete, Delta, Error, StreamEvent, ToolCallRequested

__all__ = ["RemoteBackend", "RemoteSettings", "map_remote_error"]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({429, 502, 503, 504})
_CONTEXT_MARKERS = ("context length", "maximum context", "context_length_exceeded")


@dataclass(slots=True)
class RemoteSettings:
    """Connection settings for one server profile and model."""

    base_url: str
    model: str
    api_key: str | None = None
    request_timeout: float | None = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    include_usage: bool = False
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_profile(
        cls,
        profile: ServerProfile,
        model: str,
        *,
        default_timeout: float | None = 60.0,
        **overrides: Any,
    ) -> "RemoteSettings":
        timeout = profile.request_timeout_seconds
        return cls(
            base_url=profile.base_url,
            model=model,
            api_key=profile.api_key,
            request_timeout=float(timeout) if timeout is not None else default_timeout,
            **overrides,
        )


class _CancelToken:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (APIConnectionError, httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code in _RETRYABLE_STATUS
    return False


def _status_detail(exc: APIStatusError) -> str:
    detail = getattr(exc, "message", None) or str(exc)
    return detail.strip()[:200]


def map_remote_error(exc: BaseException, *, base_url: str = "") -> BackendUnavailable:
    """Translate SDK and transport failures into user-facing messages."""

    if isinstance(exc, BackendUnavailable):
        return exc
    host = urlparse(base_url).hostname or base_url or "server"
    if isinstance(exc, AuthenticationError):
        return BackendUnavailable("Authentication failed. Check your API key.", status_code=401)
    if isinstance(exc, RateLimitError):
        retry_after = exc.response.headers.get("retry-after") if exc.response is not None else None
        if retry_after and retry_after.isdigit():
            return BackendUnavailable(
                f"Rate limited by server. Try again in {retry_after}s.", status_code=429, retry_after=int(retry_after)
            )
        return BackendUnavailable("Rate limited by server. Try again shortly.", status_code=429)
    if isinstance(exc, BadRequestError):
        detail = _status_detail(exc)
        if any(marker in detail.lower() for marker in _CONTEXT_MARKERS):
            return BackendUnavailable(
                "Context length exceeded. Try compacting the conversation or starting a new one.",
                status_code=400,
            )
        return BackendUnavailable(f"Server error (400): {detail}", status_code=400)
    if isinstance(exc, APIStatusError):
        detail = _status_detail(exc)
        if detail:
            return BackendUnavailable(f"Server error ({exc.status_code}): {detail}", status_code=exc.status_code)
        return BackendUnavailable(f"Server error ({exc.status_code}). Try again later.", status_code=exc.status_code)
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException)):
        return BackendUnavailable(
            "Request timed out. The server may be busy; try again or increase the timeout."
        )
    if isinstance(exc, (APIConnectionError, httpx.ConnectError)):
        return BackendUnavailable(f"Could not connect to {host}. Verify the server is running.")
    if isinstance(exc, httpx.HTTPError):
        return BackendUnavailable("Network unavailable. Check your connection and try again.")
    return BackendUnavailable(str(exc) or exc.__class__.__name__)


class RemoteBackend:
    """Streams chat completions from an OpenAI-compatible server.

    SSE framing and the ``[DONE]`` sentinel are handled by the ``openai``
    SDK. Opening the stream is retried for transient failures; once the
    first chunk arrives nothing is retried and a disconnect becomes an
    ``Error`` event.
    """

    def __init__(self, settings: RemoteSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._open_streams: Set[_CancelToken] = set()

    @property
    def settings(self) -> RemoteSettings:
        return self._settings

    async def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        token = _CancelToken()
        self._open_streams.add(token)
        try:
            async with aclosing(self._stream(token, messages, params, tools)) as events:
                async for event in events:
                    yield event
        finally:
            self._open_streams.discard(token)

    async def _stream(
        self,
        token: "_CancelToken",
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(messages, params, tools=tools, stream=True)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            stream = await self._with_retry(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = map_remote_error(exc, base_url=self._settings.base_url)
            LOGGER.error("Opening chat stream failed: %s", error.message)
            yield Error(error.message, error.to_dict())
            return

        accumulator = StreamAccumulator()
        received_any = False
        try:
            async for chunk in stream:
                if token.cancelled:
                    LOGGER.debug("Remote stream cancelled after %d chars", len(accumulator.content))
                    return
                received_any = True
                for event in self._consume_chunk(chunk, accumulator):
                    yield event
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = map_remote_error(exc, base_url=self._settings.base_url)
            if received_any and accumulator.content.strip():
                description = "Connection lost. Partial response was received."
            elif received_any:
                description = "Connection lost during streaming"
            else:
                description = error.message
            LOGGER.error("Chat stream failed: %s", error.message)
            yield Error(description, error.to_dict())
            return
        finally:
            await self._close_quietly(stream)

        if token.cancelled:
            return
        result = accumulator.result()
        if result.wants_tools:
            for call in result.tool_calls:
                yield ToolCallRequested.from_call(call)
        LOGGER.debug(
            "Chat stream finished (finish_reason=%s, %d chars, %d tool call(s))",
            result.finish_reason,
            len(result.content),
            len(result.tool_calls),
        )
        yield Complete(result=result)

    async def complete(self, messages: Sequence[Mapping[str, Any]], params: GenerationParams) -> str:
        """Non-streaming completion; raises :class:`BackendUnavailable`."""

        payload = self._build_payload(messages, params, stream=False)
        try:
            response = await self._with_retry(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise map_remote_error(exc, base_url=self._settings.base_url) from exc
        choices = getattr(response, "choices", None) or []
        content = (choices[0].message.content or "").strip() if choices else ""
        if not content:
            raise BackendUnavailable("No response generated. Try again or rephrase your message.")
        return content

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return the model identifiers the server advertises (cached)."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            try:
                response = await self._client.models.list()
            except Exception as exc:
                raise map_remote_error(exc, base_url=self._settings.base_url) from exc
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def cancel(self) -> None:
        """Stop every stream currently open on this backend."""

        for token in list(self._open_streams):
            token.cancelled = True

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_client(self, settings: RemoteSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            # The SDK insists on a key; local servers usually ignore it.
            api_key=settings.api_key or "not-needed",
            base_url=_api_root(settings.base_url),
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    async def _with_retry(self, payload: Dict[str, Any]) -> Any:
        response: Any = None
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_transient),
        ):
            with attempt:
                response = await self._client.chat.completions.create(**payload)
        return response

    def _build_payload(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        stream: bool,
    ) -> Dict[str, Any]:
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [dict(message) for message in messages],
            "stream": stream,
        }
        for name in ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty"):
            value = getattr(params, name)
            if value is not None:
                payload[name] = value
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if stream and self._settings.include_usage:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _consume_chunk(self, chunk: Any, accumulator: StreamAccumulator) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            accumulator.set_usage(usage)
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return events
        choice = choices[0]
        accumulator.set_finish_reason(getattr(choice, "finish_reason", None))
        delta = getattr(choice, "delta", None)
        if delta is None:
            return events

        content = getattr(delta, "content", None)
        if content:
            accumulator.add_content(content)
            events.append(Delta(content=content))
        # Non-standard field used by reasoning servers (DeepSeek, vLLM, llama.cpp).
        reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
        if reasoning:
            accumulator.add_thinking(reasoning)
            events.append(Delta(content="", thinking_content=reasoning))

        for fragment in getattr(delta, "tool_calls", None) or []:
            function = getattr(fragment, "function", None)
            accumulator.add_tool_fragment(
                getattr(fragment, "index", 0) or 0,
                call_id=getattr(fragment, "id", None),
                name=getattr(function, "name", None) if function is not None else None,
                arguments=getattr(function, "arguments", None) if function is not None else None,
            )
        return events

    async def _close_quietly(self, stream: Any) -> None:
        close = getattr(stream, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception:  # pragma: no cover - closing a dead connection
            LOGGER.debug("Closing chat stream failed", exc_info=True)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)


def _api_root(base_url: str) -> str:
    """Server profiles store the bare host; the SDK wants the ``/v1`` root."""

    root = base_url.rstrip("/")
    return root if root.endswith("/v1") else f"{root}/v1"
