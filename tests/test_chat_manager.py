"""Tests for chat turn orchestration."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, cast

import pytest
from openai import AsyncOpenAI

from pocketllm.backends.events import Cancelled, Compacting, Complete, Delta, Error, ToolCallRequested, ToolResult
from pocketllm.backends.remote import RemoteBackend, RemoteSettings
from pocketllm.chat.manager import ChatManager, TurnState, derive_title
from pocketllm.chat.models import BackendSelection, GenerationParams, ToolCall
from pocketllm.errors import ConstraintViolation, TurnInProgress
from pocketllm.services.settings import Settings
from pocketllm.storage import ChatDatabase
from pocketllm.tools import register_builtin_tools

from tests.helpers import BlockingBackend, FailingBackend, ScriptedBackend, reply, tool_request


def _manager(database: ChatDatabase, backend: Any, **kwargs: Any) -> ChatManager:
    manager = ChatManager(database, lambda _selection: backend, **kwargs)
    register_builtin_tools(manager.tools)
    return manager


@pytest.mark.asyncio
async def test_send_message_persists_user_and_assistant(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("Hello there", thinking="greet")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    stream = manager.send_message(conversation.id, "Hi!", selection)
    events = await stream.collect()

    assert isinstance(events[0], Delta)
    final = events[-1]
    assert isinstance(final, Complete) and final.message is not None
    assert final.message.content == "Hello there"
    assert final.message.thinking_content == "greet"
    assert final.message.model_id == "test-model"
    branch = manager.active_branch(conversation.id)
    assert [(item.role, item.content) for item in branch] == [("user", "Hi!"), ("assistant", "Hello there")]
    stored = manager.conversations.require(conversation.id)
    assert stored.active_leaf_message_id == final.message.id
    assert stored.title == "Hi!"
    assert stored.last_server_id == "server-1"
    assert stream.state is TurnState.PERSISTED
    assert not manager.is_generating(conversation.id)


@pytest.mark.asyncio
async def test_context_includes_system_prompt_and_history(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("one"), reply("two")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation(system_prompt="Be terse", temperature=0.1)

    await manager.send_message(conversation.id, "first", selection).collect()
    await manager.send_message(conversation.id, "second", selection, GenerationParams(max_tokens=99)).collect()

    call = backend.calls[1]
    assert [item["role"] for item in call["messages"]] == ["system", "user", "assistant", "user"]
    assert call["messages"][0]["content"] == "Be terse"
    assert call["params"].temperature == 0.1
    assert call["params"].max_tokens == 99
    assert [tool["function"]["name"] for tool in call["tools"]] == ["calculator"]


def test_derive_title() -> None:
    assert derive_title("short") == "short"
    assert derive_title("x" * 60) == "x" * 50 + "..."


@pytest.mark.asyncio
async def test_tool_round_trip(database: ChatDatabase, selection: BackendSelection) -> None:
    call = ToolCall(id="call_1", name="calculator", arguments='{"expression": "6 * 7"}')
    backend = ScriptedBackend([tool_request(call), reply("It is 42")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    events = await manager.send_message(conversation.id, "6 times 7?", selection).collect()

    assert ToolCallRequested.from_call(call) in events
    assert ToolResult(tool_call_id="call_1", name="calculator", result="42.0") in events
    branch = manager.active_branch(conversation.id)
    assert [item.role for item in branch] == ["user", "assistant", "tool", "assistant"]
    assert branch[1].tool_calls == (call,)
    assert branch[2].tool_call_id == "call_1"
    second_prompt = backend.calls[1]["messages"]
    assert second_prompt[-1] == {"role": "tool", "content": "42.0", "tool_call_id": "call_1"}
    assert second_prompt[-2]["tool_calls"][0]["function"]["name"] == "calculator"


@pytest.mark.asyncio
async def test_unknown_tool_yields_error_result(database: ChatDatabase, selection: BackendSelection) -> None:
    call = ToolCall(id="call_x", name="does_not_exist", arguments="{}")
    backend = ScriptedBackend([tool_request(call), reply("sorry")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    events = await manager.send_message(conversation.id, "go", selection).collect()

    results = [event for event in events if isinstance(event, ToolResult)]
    assert len(results) == 1
    assert results[0].result.startswith("Error:")
    assert isinstance(events[-1], Complete)


@pytest.mark.asyncio
async def test_tool_loop_is_capped(database: ChatDatabase, selection: BackendSelection) -> None:
    call = ToolCall(id="call_1", name="calculator", arguments='{"expression": "1"}')
    backend = ScriptedBackend([tool_request(call)])
    manager = _manager(database, backend, settings=Settings(max_tool_rounds=2))
    conversation = manager.new_conversation()

    stream = manager.send_message(conversation.id, "loop", selection)
    events = await stream.collect()

    assert isinstance(events[-1], Error)
    assert events[-1].details["error"] == "tool_loop_exceeded"
    assert len(backend.calls) == 3
    assert stream.state is TurnState.ERROR


@pytest.mark.asyncio
async def test_declined_approval_stops_after_tool_request(database: ChatDatabase, selection: BackendSelection) -> None:
    call = ToolCall(id="call_1", name="calculator", arguments='{"expression": "1"}')
    backend = ScriptedBackend([tool_request(call, content="Let me check")])
    decisions: list[str] = []

    async def approval(conversation_id: str, calls: Any) -> bool:
        decisions.append(calls[0].name)
        return False

    manager = _manager(database, backend, approval=approval)
    conversation = manager.new_conversation()

    events = await manager.send_message(conversation.id, "go", selection).collect()

    assert decisions == ["calculator"]
    assert isinstance(events[-1], Complete)
    assert events[-1].message.tool_calls == (call,)
    assert not any(isinstance(event, ToolResult) for event in events)


@pytest.mark.asyncio
async def test_backend_error_is_terminal(database: ChatDatabase, selection: BackendSelection) -> None:
    manager = _manager(database, FailingBackend())
    conversation = manager.new_conversation()

    stream = manager.send_message(conversation.id, "hello", selection)
    events = await stream.collect()

    assert events == [Error("Server error (500): boom", {"status_code": 500})]
    branch = manager.active_branch(conversation.id)
    assert [item.role for item in branch] == ["user"]


@pytest.mark.asyncio
async def test_cancellation_discards_assistant_output(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = BlockingBackend()
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    stream = manager.send_message(conversation.id, "write an essay", selection)
    user_leaf = manager.conversations.require(conversation.id).active_leaf_message_id
    await asyncio.wait_for(backend.started.wait(), timeout=1)

    assert manager.stop_generation(conversation.id)
    events = await stream.collect()

    assert isinstance(events[-1], Cancelled)
    assert not any(isinstance(event, Complete) for event in events)
    assert backend.closed
    assert not backend.cancelled
    assert manager.conversations.require(conversation.id).active_leaf_message_id == user_leaf
    assert [item.role for item in manager.messages.by_conversation(conversation.id)] == ["user"]
    assert stream.state is TurnState.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_regeneration_restores_previous_leaf(
    database: ChatDatabase, selection: BackendSelection
) -> None:
    backends: dict[str, Any] = {"current": ScriptedBackend([reply("first answer")])}
    manager = ChatManager(database, lambda _selection: backends["current"])
    conversation = manager.new_conversation()
    done = await manager.send_message(conversation.id, "q", selection).collect()
    answer = done[-1].message

    blocking = BlockingBackend()
    backends["current"] = blocking
    stream = manager.regenerate(answer.id, selection)
    await asyncio.wait_for(blocking.started.wait(), timeout=1)
    stream.cancel()
    await stream.wait()

    assert isinstance(stream.final_event, Cancelled)
    assert manager.conversations.require(conversation.id).active_leaf_message_id == answer.id
    assert len(manager.messages.by_conversation(conversation.id)) == 2


def _text_chunk(content: str, finish_reason: str | None = None) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, reasoning_content=None, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=None)


class _GatedStream:
    """SSE stand-in that sends one chunk, then waits for the gate."""

    def __init__(self, gate: asyncio.Event) -> None:
        self._gate = gate
        self._chunks = [_text_chunk("one"), _text_chunk(" two", "stop")]
        self.first_sent = asyncio.Event()
        self.closed = False

    def __aiter__(self) -> "_GatedStream":
        return self

    async def __anext__(self) -> Any:
        if not self._chunks:
            raise StopAsyncIteration
        if self.first_sent.is_set():
            await self._gate.wait()
        chunk = self._chunks.pop(0)
        self.first_sent.set()
        return chunk

    async def close(self) -> None:
        self.closed = True


class _GatedCompletions:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.streams: list[_GatedStream] = []

    async def create(self, **kwargs: Any) -> _GatedStream:
        stream = _GatedStream(self.gate)
        self.streams.append(stream)
        return stream


@pytest.mark.asyncio
async def test_stopping_one_conversation_spares_others_on_shared_backend(
    database: ChatDatabase, selection: BackendSelection
) -> None:
    completions = _GatedCompletions()
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    shared = RemoteBackend(
        RemoteSettings(base_url="http://server.local", model="test-model"),
        client=cast(AsyncOpenAI, client),
    )
    manager = _manager(database, shared)
    first = manager.new_conversation()
    second = manager.new_conversation()

    stopped = manager.send_message(first.id, "first question", selection)
    running = manager.send_message(second.id, "second question", selection)
    for _ in range(100):
        if len(completions.streams) == 2 and all(item.first_sent.is_set() for item in completions.streams):
            break
        await asyncio.sleep(0.01)

    assert manager.stop_generation(first.id)
    completions.gate.set()
    stopped_events = await stopped.collect()
    running_events = await running.collect()

    assert isinstance(stopped_events[-1], Cancelled)
    final = running_events[-1]
    assert isinstance(final, Complete) and final.message is not None
    assert final.message.content == "one two"
    assert [item.role for item in manager.active_branch(second.id)] == ["user", "assistant"]
    assert [item.role for item in manager.active_branch(first.id)] == ["user"]
    assert completions.streams[0].closed


@pytest.mark.asyncio
async def test_failed_regeneration_keeps_previous_answer_active(
    database: ChatDatabase, selection: BackendSelection
) -> None:
    backends: dict[str, Any] = {"current": ScriptedBackend([reply("first answer")])}
    manager = ChatManager(database, lambda _selection: backends["current"])
    conversation = manager.new_conversation()
    answer = (await manager.send_message(conversation.id, "q", selection).collect())[-1].message

    backends["current"] = FailingBackend()
    events = await manager.regenerate(answer.id, selection).collect()

    assert isinstance(events[-1], Error)
    assert manager.conversations.require(conversation.id).active_leaf_message_id == answer.id
    assert [item.content for item in manager.active_branch(conversation.id)] == ["q", "first answer"]
    assert len(manager.messages.by_conversation(conversation.id)) == 2


@pytest.mark.asyncio
async def test_second_turn_is_rejected_while_streaming(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = BlockingBackend()
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    stream = manager.send_message(conversation.id, "one", selection)
    with pytest.raises(TurnInProgress):
        manager.send_message(conversation.id, "two", selection)

    backend.release.set()
    events = await stream.collect()
    assert isinstance(events[-1], Complete)
    assert len(manager.messages.by_conversation(conversation.id)) == 2


@pytest.mark.asyncio
async def test_regenerate_creates_sibling(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("first"), reply("second")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()
    first = (await manager.send_message(conversation.id, "q", selection).collect())[-1].message

    second = (await manager.regenerate(first.id, selection).collect())[-1].message

    assert second.parent_message_id == first.parent_message_id
    siblings, index = manager.branches.siblings(second.id)
    assert [item.content for item in siblings] == ["first", "second"]
    assert index == 1
    assert manager.switch_branch(second.id, -1).id == first.id
    # the regenerated prompt does not contain the old answer
    assert [item["role"] for item in backend.calls[1]["messages"]] == ["user"]


@pytest.mark.asyncio
async def test_empty_text_regenerates_from_active_leaf(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("first"), reply("again")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()

    with pytest.raises(ConstraintViolation):
        manager.send_message(conversation.id, "  ", selection)

    first = (await manager.send_message(conversation.id, "q", selection).collect())[-1].message
    manager.conversations.update_active_leaf(conversation.id, first.parent_message_id)
    again = (await manager.send_message(conversation.id, "", selection).collect())[-1].message

    assert again.parent_message_id == first.parent_message_id
    assert len(manager.messages.by_conversation(conversation.id)) == 3


@pytest.mark.asyncio
async def test_edit_message_branches_off(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("a1"), reply("a2")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()
    first = (await manager.send_message(conversation.id, "original", selection).collect())[-1].message

    edited = (await manager.edit_message(first.parent_message_id, "edited", selection).collect())[-1].message

    branch = manager.active_branch(conversation.id)
    assert [item.content for item in branch] == ["edited", "a2"]
    assert branch[-1].id == edited.id
    assert len(manager.messages.roots_of(conversation.id)) == 2
    with pytest.raises(ConstraintViolation):
        manager.edit_message(first.id, "assistant edits are rejected", selection)


@pytest.mark.asyncio
async def test_delete_message_repairs_active_leaf(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("a1"), reply("a2")])
    manager = _manager(database, backend)
    conversation = manager.new_conversation()
    await manager.send_message(conversation.id, "q1", selection).collect()
    await manager.send_message(conversation.id, "q2", selection).collect()
    q1, a1, q2, a2 = manager.active_branch(conversation.id)

    removed = manager.delete_message(q2.id)

    assert removed == 2
    assert manager.conversations.require(conversation.id).active_leaf_message_id == a1.id
    assert manager.messages.require(a1.id).child_count == 0

    assert manager.delete_message(q1.id) == 2
    assert manager.conversations.require(conversation.id).active_leaf_message_id is None


@pytest.mark.asyncio
async def test_auto_compaction_emits_compacting(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("x" * 200)], summary="condensed")
    manager = _manager(database, backend)
    conversation = manager.new_conversation()
    params = GenerationParams(context_window=200)

    for index in range(3):
        await manager.send_message(conversation.id, f"question {index} " + "y" * 200, selection, params).collect()
    stream = manager.send_message(conversation.id, "last", selection, params)
    events = await stream.collect()

    assert any(isinstance(event, Compacting) for event in events)
    assert isinstance(events[-1], Complete)
    summary = manager.summaries.latest(conversation.id)
    assert summary is not None and summary.summary == "condensed"
    prompt = backend.calls[-1]["messages"]
    assert prompt[0] == {"role": "system", "content": "Previous conversation summary: condensed"}


@pytest.mark.asyncio
async def test_manual_compaction_keeps_last_two(database: ChatDatabase, selection: BackendSelection) -> None:
    backend = ScriptedBackend([reply("a")], summary="short")
    manager = _manager(database, backend)
    conversation = manager.new_conversation()
    for index in range(3):
        await manager.send_message(conversation.id, f"q{index}", selection).collect()

    summary = await manager.compact_conversation(conversation.id, selection)

    assert summary is not None
    assert summary.compacted_message_count == 4
    assert summary.inserted_before_message_id == manager.active_branch(conversation.id)[4].id


@pytest.mark.asyncio
async def test_export_markdown(database: ChatDatabase, selection: BackendSelection) -> None:
    manager = _manager(database, ScriptedBackend([reply("Hi!", thinking="be nice")]))
    conversation = manager.new_conversation()
    await manager.send_message(conversation.id, "Hello", selection).collect()

    text = manager.export_markdown(conversation.id)

    assert text.startswith("# Hello\n")
    assert "## User\n\nHello" in text
    assert "## Assistant (test-model)" in text
    assert "<summary>Thinking</summary>" in text


def test_send_message_requires_running_loop(database: ChatDatabase, selection: BackendSelection) -> None:
    manager = _manager(database, ScriptedBackend([reply("x")]))
    conversation = manager.new_conversation()

    with pytest.raises(RuntimeError):
        manager.send_message(conversation.id, "hi", selection)
    assert manager.messages.by_conversation(conversation.id) == []

