"""Error taxonomy shared by the conversation tree, backends and tool loop."""

from __future__ import annotations

from typing import Any, ClassVar

__all__ = [
    "PocketLLMError",
    "NotFoundError",
    "ConstraintViolation",
    "CorruptTreeError",
    "BackendUnavailable",
    "InvalidModelFile",
    "ToolNotFoundError",
    "ToolArgumentError",
    "ToolLoopExceeded",
    "TurnCancelled",
    "TurnInProgress",
]


class PocketLLMError(Exception):
    """Base class for every error raised by the chat core."""

    code: ClassVar[str] = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = dict(details)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for stream events and logs."""
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NotFoundError(PocketLLMError):
    """A referenced conversation, message, model or server profile is absent."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}", kind=kind, id=identifier)


class ConstraintViolation(PocketLLMError):
    """A mutation would break a tree invariant."""

    code = "constraint_violation"


class CorruptTreeError(PocketLLMError):
    """A branch walk found a cycle or an unreachable root."""

    code = "corrupt_tree"


class BackendUnavailable(PocketLLMError):
    """The remote server or the local engine cannot serve the request."""

    code = "backend_unavailable"

    def __init__(self, message: str, *, status_code: int | None = None, **details: Any) -> None:
        self.status_code = status_code
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, **details)


class InvalidModelFile(PocketLLMError):
    """A local model file failed the GGUF magic check."""

    code = "invalid_model_file"


class ToolNotFoundError(PocketLLMError):
    """The model asked for a tool that is unknown or disabled."""

    code = "tool_not_found"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown tool '{name}'", tool=name)


class ToolArgumentError(PocketLLMError):
    """Tool arguments could not be parsed or failed validation."""

    code = "tool_argument_error"

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"invalid arguments for tool '{name}': {reason}", tool=name)


class ToolLoopExceeded(PocketLLMError):
    """The model kept requesting tools past the configured round cap."""

    code = "tool_loop_exceeded"

    def __init__(self, max_rounds: int) -> None:
        self.max_rounds = max_rounds
        super().__init__(
            f"Tool call limit reached ({max_rounds} rounds) without a final answer",
            max_rounds=max_rounds,
        )


class TurnCancelled(PocketLLMError):
    """The user stopped generation."""

    code = "cancelled"

    def __init__(self, message: str = "Generation cancelled") -> None:
        super().__init__(message)


class TurnInProgress(PocketLLMError):
    """A second turn was started while one is still streaming."""

    code = "turn_in_progress"

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(
            f"A response is already being generated for conversation {conversation_id}",
            conversation_id=conversation_id,
        )
