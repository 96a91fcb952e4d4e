"""Conversation tree types and the chat turn machinery.

Only the plain record types are re-exported here; the stores and the
backends import them, so the heavier modules are imported directly.
"""

from .models import (
    LOCAL_SERVER_ID,
    BackendSelection,
    CompactionSummary,
    Conversation,
    GenerationParams,
    Message,
    ServerProfile,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    new_id,
)

__all__ = [
    "BackendSelection",
    "CompactionSummary",
    "Conversation",
    "GenerationParams",
    "LOCAL_SERVER_ID",
    "Message",
    "ServerProfile",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "new_id",
]
