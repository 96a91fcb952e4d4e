"""Markdown export of a conversation's active branch."""

from __future__ import annotations

from typing import List, Sequence

from .models import Conversation, Message

__all__ = ["export_markdown"]

_ROLE_HEADINGS = {
    "system": "System",
    "user": "User",
    "assistant": "Assistant",
    "tool": "Tool",
}


def export_markdown(conversation: Conversation, branch: Sequence[Message]) -> str:
    """Render ``branch`` as a Markdown document.

    Thinking content is folded into a ``<details>`` block, tool calls are
    listed with their JSON arguments and tool results are fenced.
    """
    lines: List[str] = [f"# {conversation.title}", ""]
    if conversation.system_prompt:
        lines.extend(["> **System prompt:** " + conversation.system_prompt.replace("\n", "\n> "), ""])
    for message in branch:
        lines.extend(_render(message))
    return "\n".join(lines).rstrip() + "\n"


def _render(message: Message) -> List[str]:
    heading = _ROLE_HEADINGS.get(message.role, message.role.title())
    if message.role == "assistant" and message.model_id:
        heading = f"{heading} ({message.model_id})"
    lines = [f"## {heading}", ""]
    if message.thinking_content:
        lines.extend(["<details>", "<summary>Thinking</summary>", "", message.thinking_content, "", "</details>", ""])
    if message.role == "tool":
        lines.extend(["```", message.content, "```", ""])
    elif message.content:
        lines.extend([message.content, ""])
    for url in message.image_urls:
        lines.extend([f"![image]({url})" if not url.startswith("data:") else "*[image attachment]*", ""])
    for call in message.tool_calls:
        lines.extend([f"**Tool call:** `{call.name}`", "", "```json", call.arguments or "{}", "```", ""])
    return lines
