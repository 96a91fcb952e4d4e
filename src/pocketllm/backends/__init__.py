"""Chat backends sharing one streaming event model."""

from .base import BackendAdapter, StreamAccumulator
from .events import (
    Cancelled,
    Compacting,
    Complete,
    CompletionResult,
    Delta,
    Error,
    StreamEvent,
    ToolCallRequested,
    ToolResult,
)
from .factory import BackendFactory
from .local import EngineState, LlmEngine, LocalBackend, NativeRuntime
from .remote import RemoteBackend, RemoteSettings, map_remote_error
from .thinking import split_thinking

__all__ = [
    "BackendAdapter",
    "BackendFactory",
    "Cancelled",
    "Compacting",
    "Complete",
    "CompletionResult",
    "Delta",
    "EngineState",
    "Error",
    "LlmEngine",
    "LocalBackend",
    "NativeRuntime",
    "RemoteBackend",
    "RemoteSettings",
    "StreamAccumulator",
    "StreamEvent",
    "ToolCallRequested",
    "ToolResult",
    "map_remote_error",
    "split_thinking",
]
