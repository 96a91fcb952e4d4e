"""Incremental events produced while a chat turn streams.

Backends yield :class:`Delta`, :class:`ToolCallRequested`,
:class:`Complete` (carrying a :class:`CompletionResult`) and
:class:`Error`. The chat manager re-emits those and adds
:class:`Cancelled`, :class:`ToolResult` and :class:`Compacting`; its
:class:`Complete` carries the persisted assistant message instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from ..chat.models import Message, TokenUsage, ToolCall

__all__ = [
    "CompletionResult",
    "Delta",
    "ToolCallRequested",
    "Complete",
    "Error",
    "Cancelled",
    "ToolResult",
    "Compacting",
    "StreamEvent",
    "TERMINAL_EVENTS",
]


@dataclass(slots=True, frozen=True)
class CompletionResult:
    """Everything a backend accumulated for one streamed completion."""

    content: str = ""
    thinking_content: Optional[str] = None
    tool_calls: Tuple[ToolCall, ...] = ()
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None

    @property
    def wants_tools(self) -> bool:
        return self.finish_reason == "tool_calls" and bool(self.tool_calls)


@dataclass(slots=True, frozen=True)
class Delta:
    content: str = ""
    thinking_content: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ToolCallRequested:
    id: str
    name: str
    arguments: str

    @classmethod
    def from_call(cls, call: ToolCall) -> "ToolCallRequested":
        return cls(id=call.id, name=call.name, arguments=call.arguments)


@dataclass(slots=True, frozen=True)
class Complete:
    """Terminal success; exactly one of ``result`` or ``message`` is set."""

    result: Optional[CompletionResult] = None
    message: Optional[Message] = None


@dataclass(slots=True, frozen=True)
class Error:
    description: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Cancelled:
    reason: str = "Generation cancelled"


@dataclass(slots=True, frozen=True)
class ToolResult:
    tool_call_id: str
    name: str
    result: str


@dataclass(slots=True, frozen=True)
class Compacting:
    pass


StreamEvent = Union[Delta, ToolCallRequested, Complete, Error, Cancelled, ToolResult, Compacting]

TERMINAL_EVENTS = (Complete, Error, Cancelled)
