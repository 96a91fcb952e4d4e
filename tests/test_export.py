"""Tests for markdown export."""

from __future__ import annotations

from pocketllm.chat.export import export_markdown
from pocketllm.chat.models import Conversation, Message, ToolCall


def test_export_renders_roles_tools_and_images() -> None:
    conversation = Conversation(id="c", title="Math help", system_prompt="Be exact.\nShow work.")
    user = Message.create("c", "user", "What is 2+2?", image_urls=("https://example.com/a.png",))
    call = ToolCall(id="call_1", name="calculator", arguments='{"expression": "2+2"}')
    assistant = Message.create("c", "assistant", "", parent=user, tool_calls=(call,), model_id="llama")
    tool = Message.create("c", "tool", "4.0", parent=assistant, tool_call_id="call_1")
    final = Message.create("c", "assistant", "It is 4.", parent=tool, thinking_content="easy")

    text = export_markdown(conversation, [user, assistant, tool, final])

    assert text.startswith("# Math help\n\n> **System prompt:** Be exact.\n> Show work.\n")
    assert "![image](https://example.com/a.png)" in text
    assert "## Assistant (llama)" in text
    assert '**Tool call:** `calculator`\n\n```json\n{"expression": "2+2"}\n```' in text
    assert "## Tool\n\n```\n4.0\n```" in text
    assert "<details>\n<summary>Thinking</summary>\n\neasy\n\n</details>" in text
    assert text.endswith("It is 4.\n")


def test_export_empty_branch() -> None:
    assert export_markdown(Conversation(id="c", title="Empty"), []) == "# Empty\n"
