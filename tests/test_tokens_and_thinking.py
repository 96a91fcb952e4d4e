"""Tests for token estimation and ``<think>`` extraction."""

from __future__ import annotations

from pocketllm.backends.base import StreamAccumulator
from pocketllm.backends.thinking import resolve_thinking, split_thinking
from pocketllm.chat.models import Message
from pocketllm.utils.tokens import estimate_message_tokens, estimate_tokens


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_estimate_message_tokens_adds_overhead() -> None:
    messages = [
        {"role": "user", "content": "abcd"},
        Message.create("c", "assistant", "abcdefgh"),
        {"role": "user", "content": [{"type": "text", "text": "abcd"}, {"type": "image_url", "image_url": {}}]},
    ]

    assert estimate_message_tokens(messages) == (1 + 4) + (2 + 4) + (1 + 4)


def test_split_thinking_moves_first_span() -> None:
    visible, thinking = split_thinking("<think> plan </think>\nAnswer ")

    assert visible == "Answer"
    assert thinking == "plan"


def test_split_thinking_without_tags_is_unchanged() -> None:
    assert split_thinking("plain text") == ("plain text", None)


def test_reasoning_channel_wins_over_tags() -> None:
    content = "<think>inline</think>Answer"

    assert resolve_thinking(content, "channel") == (content, "channel")
    assert resolve_thinking(content, "   ") == ("Answer", "inline")


def test_accumulator_concatenates_deltas_and_keeps_last_usage() -> None:
    accumulator = StreamAccumulator()
    for piece in ("Hel", "lo", " world"):
        accumulator.add_content(piece)
    accumulator.set_usage({"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2})
    accumulator.set_usage({"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8})
    accumulator.set_finish_reason("stop")

    result = accumulator.result()

    assert result.content == "Hello world"
    assert result.usage is not None and result.usage.total_tokens == 8
    assert result.finish_reason == "stop"
    assert not result.wants_tools


def test_accumulator_joins_tool_call_fragments_by_index() -> None:
    accumulator = StreamAccumulator()
    accumulator.add_tool_fragment(1, call_id="call_b", name="web_fetch", arguments='{"url": ')
    accumulator.add_tool_fragment(0, call_id="call_a", name="calc", arguments='{"expression"')
    accumulator.add_tool_fragment(0, name="ulator", arguments=': "1+1"}')
    accumulator.add_tool_fragment(1, arguments='"https://example.com"}')
    accumulator.set_finish_reason("tool_calls")

    result = accumulator.result()

    assert [call.name for call in result.tool_calls] == ["calculator", "web_fetch"]
    assert result.tool_calls[0].arguments == '{"expression": "1+1"}'
    assert result.tool_calls[1].arguments == '{"url": "https://example.com"}'
    assert result.wants_tools
