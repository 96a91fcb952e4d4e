"""Token estimation utilities used for compaction decisions."""

from __future__ import annotations

import math
from typing import Any, Iterable

# Characters per token for English prose with GPT-style tokenizers
CHARS_PER_TOKEN = 4

# Role and formatting overhead added for every chat message
PER_MESSAGE_OVERHEAD = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate the number of tokens in a text string.

    This is a character-count heuristic, not real tokenization: it
    divides the string length by :data:`CHARS_PER_TOKEN` and rounds up.
    The result is deterministic so compaction thresholds are testable
    without a model.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count (0 for empty text).
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Any]) -> int:
    """Estimate tokens for a list of messages.

    Accepts message objects exposing ``content`` or mappings with a
    ``"content"`` key; each message adds :data:`PER_MESSAGE_OVERHEAD`.
    """
    total = 0
    for message in messages:
        if isinstance(message, dict):
            content = message.get("content")
        else:
            content = getattr(message, "content", None)
        if not isinstance(content, str):
            content = _flatten_parts(content)
        total += estimate_tokens(content) + PER_MESSAGE_OVERHEAD
    return total


def _flatten_parts(content: Any) -> str:
    if not content:
        return ""
    if isinstance(content, (list, tuple)):
        texts = [part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"]
        return "\n".join(texts)
    return str(content)


__all__ = ["CHARS_PER_TOKEN", "PER_MESSAGE_OVERHEAD", "estimate_tokens", "estimate_message_tokens"]
