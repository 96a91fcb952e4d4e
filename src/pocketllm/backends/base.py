"""Backend protocol and the accumulator shared by both backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..chat.models import GenerationParams, TokenUsage, ToolCall
from .events import CompletionResult, StreamEvent
from .thinking import resolve_thinking

__all__ = ["BackendAdapter", "StreamAccumulator"]


@runtime_checkable
class BackendAdapter(Protocol):
    """A chat model reachable over HTTP or loaded on-device.

    ``stream_completion`` must end with exactly one ``Complete`` or
    ``Error`` event unless it is cancelled first.
    """

    def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        ...

    async def complete(self, messages: Sequence[Mapping[str, Any]], params: GenerationParams) -> str:
        ...

    def cancel(self) -> None:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(slots=True)
class _ToolCallFragments:
    id: Optional[str] = None
    name: str = ""
    arguments: List[str] = field(default_factory=list)

    def build(self) -> ToolCall | None:
        if not self.id or not self.name:
            return None
        return ToolCall(id=self.id, name=self.name, arguments="".join(self.arguments))


class StreamAccumulator:
    """Collects streamed fragments into a :class:`CompletionResult`.

    Tool-call fragments are concatenated per index; the id arrives once
    while name and argument pieces may be split across chunks. The last
    usage object seen wins.
    """

    def __init__(self) -> None:
        self._content: List[str] = []
        self._thinking: List[str] = []
        self._tool_calls: Dict[int, _ToolCallFragments] = {}
        self.usage: TokenUsage | None = None
        self.finish_reason: str | None = None

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    def add_content(self, text: str | None) -> None:
        if text:
            self._content.append(text)

    def add_thinking(self, text: str | None) -> None:
        if text:
            self._thinking.append(text)

    def add_tool_fragment(
        self,
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        fragments = self._tool_calls.setdefault(index, _ToolCallFragments())
        if call_id:
            fragments.id = call_id
        if name:
            fragments.name += name
        if arguments:
            fragments.arguments.append(arguments)

    def set_usage(self, usage: Any) -> None:
        value = TokenUsage.from_value(usage)
        if value is not None:
            self.usage = value

    def set_finish_reason(self, reason: str | None) -> None:
        if reason:
            self.finish_reason = reason

    def tool_calls(self) -> tuple[ToolCall, ...]:
        built = (self._tool_calls[index].build() for index in sorted(self._tool_calls))
        return tuple(call for call in built if call is not None)

    def result(self, *, content_override: str | None = None) -> CompletionResult:
        """Finalize, applying the ``<think>`` fallback to the content.

        ``content_override`` replaces the streamed text when the backend
        has an authoritative final answer (the local engine's return value).
        """
        content = self.content if content_override is None else content_override
        visible, thinking = resolve_thinking(content, self.thinking)
        return CompletionResult(
            content=visible,
            thinking_content=thinking,
            tool_calls=self.tool_calls(),
            usage=self.usage,
            finish_reason=self.finish_reason,
        )
