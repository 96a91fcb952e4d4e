"""Assemble the prompt sent to a backend from the active branch."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from .models import CompactionSummary, Message

__all__ = ["SUMMARY_PREFIX", "applicable_summary", "build_context", "message_to_chat"]

SUMMARY_PREFIX = "Previous conversation summary: "


def message_to_chat(message: Message) -> Dict[str, Any]:
    """Convert a stored message into an OpenAI chat message dict."""

    entry: Dict[str, Any] = {"role": message.role}
    if message.image_urls and message.role == "user":
        parts: List[Dict[str, Any]] = []
        if message.content.strip():
            parts.append({"type": "text", "text": message.content})
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in message.image_urls)
        entry["content"] = parts
    else:
        entry["content"] = message.content
    if message.tool_call_id:
        entry["tool_call_id"] = message.tool_call_id
    if message.tool_calls:
        entry["tool_calls"] = [call.to_dict() for call in message.tool_calls]
    return entry


def applicable_summary(
    summaries: Sequence[CompactionSummary],
    branch: Sequence[Message],
) -> Optional[CompactionSummary]:
    """Pick the newest summary that still describes this branch.

    A summary applies when it covers fewer messages than the branch holds
    and its anchor (the first retained message) sits right after the
    covered prefix. Summaries written for a sibling branch are ignored.
    """
    positions = {message.id: index for index, message in enumerate(branch)}
    for summary in sorted(summaries, key=lambda item: item.compacted_message_count, reverse=True):
        if summary.compacted_message_count >= len(branch):
            continue
        anchor = summary.inserted_before_message_id
        if anchor is not None and positions.get(anchor) != summary.compacted_message_count:
            continue
        return summary
    return None


def build_context(
    branch: Sequence[Message],
    *,
    system_prompt: str | None = None,
    summary: CompactionSummary | None = None,
) -> List[Dict[str, Any]]:
    """Build chat messages for ``branch``.

    The first ``summary.compacted_message_count`` messages are replaced by
    a single system message carrying the summary. The last message of the
    branch is never skipped.
    """
    messages: List[Dict[str, Any]] = []
    if system_prompt and system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})
    skip = 0
    if summary is not None:
        skip = max(0, min(summary.compacted_message_count, len(branch) - 1))
        if skip:
            messages.append({"role": "system", "content": f"{SUMMARY_PREFIX}{summary.summary}"})
    messages.extend(message_to_chat(message) for message in branch[skip:])
    return messages
