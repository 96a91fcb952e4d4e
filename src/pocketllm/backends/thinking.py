"""Fallback extraction of ``<think>`` reasoning embedded in content."""

from __future__ import annotations

import re
from typing import Optional, Tuple

__all__ = ["THINK_PATTERN", "split_thinking", "resolve_thinking"]

THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def split_thinking(content: str) -> Tuple[str, Optional[str]]:
    """Move the first ``<think>...</think>`` span out of ``content``.

    Returns ``(visible, thinking)`` with both parts stripped, or the
    original content and ``None`` when no span is present.
    """
    match = THINK_PATTERN.search(content)
    if match is None:
        return content, None
    visible = (content[: match.start()] + content[match.end():]).strip()
    return visible, match.group(1).strip()


def resolve_thinking(content: str, reasoning: str | None) -> Tuple[str, Optional[str]]:
    """Prefer the dedicated reasoning channel; otherwise fall back to tags."""

    if reasoning and reasoning.strip():
        return content, reasoning
    return split_thinking(content)
