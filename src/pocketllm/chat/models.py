"""Conversation tree records and turn parameter types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Mapping, Optional

ChatRole = Literal["system", "user", "assistant", "tool"]

LOCAL_SERVER_ID = "__local__"
"""Sentinel server id selecting the on-device engine instead of a remote server."""


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return an opaque unique identifier."""

    return uuid.uuid4().hex


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counters reported by a backend for one completion."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @classmethod
    def from_value(cls, value: Any) -> "TokenUsage | None":
        """Build usage from an SDK object or a mapping; ``None`` stays ``None``."""

        if value is None:
            return None
        if isinstance(value, Mapping):
            getter = value.get
        else:
            def getter(key: str, default: Any = None) -> Any:
                return getattr(value, key, default)
        return cls(
            prompt_tokens=getter("prompt_tokens"),
            completion_tokens=getter("completion_tokens"),
            total_tokens=getter("total_tokens"),
        )


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A fully assembled tool invocation requested by the model."""

    id: str
    name: str
    arguments: str

    def to_dict(self) -> Dict[str, Any]:
        """Render in the OpenAI request format."""

        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(slots=True)
class Conversation:
    """A chat thread and the pointer to the tip of its active branch."""

    id: str
    title: str
    last_server_id: Optional[str] = None
    last_model_id: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    active_leaf_message_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class Message:
    """One node in a conversation tree.

    Messages are written once per turn step. The store owns ``child_count``
    and is the only place that changes it after insertion.
    """

    id: str
    conversation_id: str
    role: ChatRole
    content: str
    parent_message_id: Optional[str] = None
    thinking_content: Optional[str] = None
    server_id: Optional[str] = None
    model_id: Optional[str] = None
    usage: Optional[TokenUsage] = None
    tool_call_id: Optional[str] = None
    tool_calls: tuple[ToolCall, ...] = ()
    image_urls: tuple[str, ...] = ()
    depth: int = 0
    child_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_root(self) -> bool:
        return self.parent_message_id is None

    @classmethod
    def create(
        cls,
        conversation_id: str,
        role: ChatRole,
        content: str,
        *,
        parent: "Message | None" = None,
        **extra: Any,
    ) -> "Message":
        """Build a new message positioned under ``parent`` (or as a root)."""

        return cls(
            id=new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            parent_message_id=parent.id if parent is not None else None,
            depth=parent.depth + 1 if parent is not None else 0,
            **extra,
        )

    def snapshot(self) -> "Message":
        """Return a detached copy safe to hand to callers."""

        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for export and event payloads."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "parent_message_id": self.parent_message_id,
            "role": self.role,
            "content": self.content,
            "depth": self.depth,
            "child_count": self.child_count,
            "created_at": self.created_at.isoformat(),
        }
        if self.thinking_content:
            payload["thinking_content"] = self.thinking_content
        if self.model_id:
            payload["model_id"] = self.model_id
        if self.server_id:
            payload["server_id"] = self.server_id
        if self.usage is not None:
            payload["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.image_urls:
            payload["image_urls"] = list(self.image_urls)
        return payload


@dataclass(slots=True, frozen=True)
class CompactionSummary:
    """Generated summary standing in for the oldest messages of a branch."""

    id: str
    conversation_id: str
    summary: str
    compacted_message_count: int
    inserted_before_message_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """A tool the model may call, enabled per conversation or by default."""

    id: str
    name: str
    description: str
    parameters_schema: Mapping[str, Any] = field(default_factory=dict)
    is_built_in: bool = False
    is_enabled_by_default: bool = True

    def to_openai_tool(self) -> Dict[str, Any]:
        """Convert to the OpenAI `tools` request entry."""

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters_schema) or {"type": "object", "properties": {}},
            },
        }


@dataclass(slots=True, frozen=True)
class ServerProfile:
    """Connection details for an OpenAI-compatible server."""

    id: str
    name: str
    base_url: str
    api_key: Optional[str] = None
    request_timeout_seconds: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(slots=True, frozen=True)
class BackendSelection:
    """Which backend and model should serve a turn."""

    server_id: str
    model_id: str

    @property
    def is_local(self) -> bool:
        return self.server_id == LOCAL_SERVER_ID

    @classmethod
    def local(cls, model_id: str) -> "BackendSelection":
        return cls(server_id=LOCAL_SERVER_ID, model_id=model_id)


@dataclass(slots=True, frozen=True)
class GenerationParams:
    """Resolved sampling parameters for a single turn.

    ``None`` means "let the backend decide". The local engine additionally
    honours ``top_k``, ``min_p`` and ``repeat_penalty``.
    """

    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    top_k: Optional[int] = None
    min_p: Optional[float] = None
    repeat_penalty: Optional[float] = None
    context_window: Optional[int] = None

    def overlay(self, conversation: Conversation) -> "GenerationParams":
        """Apply non-null per-conversation overrides on top of these defaults."""

        updates: Dict[str, Any] = {}
        for name in ("system_prompt", "temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty"):
            value = getattr(conversation, name)
            if value is not None:
                updates[name] = value
        return replace(self, **updates) if updates else self


__all__ = [
    "ChatRole",
    "LOCAL_SERVER_ID",
    "new_id",
    "TokenUsage",
    "ToolCall",
    "Conversation",
    "Message",
    "CompactionSummary",
    "ToolDefinition",
    "ServerProfile",
    "BackendSelection",
    "GenerationParams",
]
