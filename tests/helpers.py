"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, List, Mapping, Sequence

from pocketllm.backends.events import CompletionResult, Complete, Delta, Error, StreamEvent, ToolCallRequested
from pocketllm.chat.models import GenerationParams, Message, ToolCall
from pocketllm.storage import ConversationStore, MessageStore


def reply(text: str, *, thinking: str | None = None) -> List[StreamEvent]:
    """Events of a plain streamed answer."""

    events: List[StreamEvent] = [Delta(content=text)]
    events.append(Complete(result=CompletionResult(content=text, thinking_content=thinking, finish_reason="stop")))
    return events


def tool_request(*calls: ToolCall, content: str = "") -> List[StreamEvent]:
    """Events of a completion that asks for tools."""

    events: List[StreamEvent] = [ToolCallRequested.from_call(call) for call in calls]
    events.append(
        Complete(result=CompletionResult(content=content, tool_calls=tuple(calls), finish_reason="tool_calls"))
    )
    return events


class ScriptedBackend:
    """Backend stub replaying one scripted event list per ``stream_completion`` call.

    When the script runs out the last round is repeated.
    """

    def __init__(self, rounds: Iterable[Sequence[StreamEvent]], *, summary: str = "summary text") -> None:
        self.rounds = [list(events) for events in rounds]
        self.summary = summary
        self.calls: List[dict[str, Any]] = []
        self.complete_calls: List[List[Mapping[str, Any]]] = []
        self.cancelled = False

    async def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        index = min(len(self.calls), len(self.rounds) - 1)
        self.calls.append({"messages": [dict(item) for item in messages], "params": params, "tools": tools})
        for event in self.rounds[index]:
            await asyncio.sleep(0)
            yield event

    async def complete(self, messages: Sequence[Mapping[str, Any]], params: GenerationParams) -> str:
        self.complete_calls.append([dict(item) for item in messages])
        return self.summary

    def cancel(self) -> None:
        self.cancelled = True

    async def aclose(self) -> None:
        return None


class BlockingBackend(ScriptedBackend):
    """Streams one delta and then waits until released or cancelled."""

    def __init__(self) -> None:
        super().__init__([reply("unused")])
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.closed = False

    async def stream_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        params: GenerationParams,
        tools: Sequence[Mapping[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.calls.append({"messages": [dict(item) for item in messages], "params": params, "tools": tools})
        try:
            yield Delta(content="partial")
            self.started.set()
            await self.release.wait()
            yield Complete(result=CompletionResult(content="partial answer", finish_reason="stop"))
        finally:
            self.closed = True


class FailingBackend(ScriptedBackend):
    def __init__(self, description: str = "Server error (500): boom") -> None:
        super().__init__([[Error(description, {"status_code": 500})]])

    async def complete(self, messages: Sequence[Mapping[str, Any]], params: GenerationParams) -> str:
        raise RuntimeError("summarizer offline")


def build_chain(
    conversations: ConversationStore,
    messages: MessageStore,
    conversation_id: str,
    contents: Sequence[str],
) -> List[Message]:
    """Insert alternating user/assistant messages and point the leaf at the last."""

    chain: List[Message] = []
    parent: Message | None = None
    for index, content in enumerate(contents):
        role = "user" if index % 2 == 0 else "assistant"
        parent = messages.insert(Message.create(conversation_id, role, content, parent=parent))
        chain.append(parent)
    if parent is not None:
        conversations.update_active_leaf(conversation_id, parent.id)
    return chain
