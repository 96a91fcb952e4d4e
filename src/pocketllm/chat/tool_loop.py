"""Drive a backend through repeated tool-call rounds until it answers."""

from __future__ import annotations

import enum
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from ..backends.base import BackendAdapter
from ..backends.events import CompletionResult, Complete, Delta, Error, StreamEvent, ToolCallRequested, ToolResult
from ..errors import ToolLoopExceeded, TurnCancelled
from ..storage.conversations import ConversationStore
from ..storage.messages import MessageStore
from ..tools.executor import ToolExecutor
from .context import message_to_chat
from .models import BackendSelection, GenerationParams, Message, ToolCall

__all__ = ["ApprovalCallback", "ToolInvocationLoop", "TurnContext", "TurnState", "DEFAULT_MAX_TOOL_ROUNDS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 8

ApprovalCallback = Callable[[str, Sequence[ToolCall]], Union[bool, Awaitable[bool]]]
EmitCallback = Callable[[StreamEvent], None]


class TurnState(enum.Enum):
    """Lifecycle of one chat turn."""

    IDLE = "idle"
    AWAITING_USER_PERSIST = "awaiting_user_persist"
    STREAMING = "streaming"
    TOOL_CALL_DETECTED = "tool_call_detected"
    EXECUTING = "executing"
    PERSISTED = "persisted"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class TurnContext:
    """Mutable state threaded through the rounds of one turn.

    ``leaf`` tracks the message new output is attached to and
    ``created_ids`` every message this turn persisted, in order.
    """

    conversation_id: str
    selection: BackendSelection
    backend: BackendAdapter
    params: GenerationParams
    messages: List[Dict[str, Any]]
    leaf: Message
    tools: Optional[List[Mapping[str, Any]]] = None
    created_ids: List[str] = field(default_factory=list)


class ToolInvocationLoop:
    """Streams a completion, executes requested tools and re-invokes.

    Every intermediate assistant message (carrying ``tool_calls``) and every
    tool result is persisted and the active leaf advanced in the same step,
    so an interrupted turn always leaves a consistent branch behind.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        messages: MessageStore,
        conversations: ConversationStore,
        *,
        max_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        approval: ApprovalCallback | None = None,
    ) -> None:
        self._executor = executor
        self._messages = messages
        self._conversations = conversations
        self._max_rounds = max(1, int(max_rounds))
        self._approval = approval

    @property
    def max_rounds(self) -> int:
        return self._max_rounds

    async def run(
        self,
        turn: TurnContext,
        emit: EmitCallback,
        set_state: Callable[[TurnState], None] | None = None,
    ) -> Message | None:
        """Run the turn to completion.

        Returns:
            The persisted final assistant message, or ``None`` when the
            backend reported an error (already emitted).

        Raises:
            TurnCancelled: The backend stream ended without a terminal event.
            ToolLoopExceeded: The model kept requesting tools past the cap.
        """
        update_state = set_state or (lambda _state: None)
        rounds = 0
        while True:
            update_state(TurnState.STREAMING)
            result = await self._stream_once(turn, emit)
            if result is None:
                update_state(TurnState.ERROR)
                return None

            if not result.wants_tools:
                message = self._persist(
                    turn,
                    "assistant",
                    result.content,
                    thinking_content=result.thinking_content,
                    usage=result.usage,
                )
                update_state(TurnState.PERSISTED)
                return message

            rounds += 1
            if rounds > self._max_rounds:
                raise ToolLoopExceeded(self._max_rounds)
            update_state(TurnState.TOOL_CALL_DETECTED)
            LOGGER.debug(
                "Tool round %d for %s: %s",
                rounds,
                turn.conversation_id,
                ", ".join(call.name for call in result.tool_calls),
            )
            assistant = self._persist(
                turn,
                "assistant",
                result.content,
                thinking_content=result.thinking_content,
                usage=result.usage,
                tool_calls=result.tool_calls,
            )
            for call in result.tool_calls:
                emit(ToolCallRequested.from_call(call))

            if not await self._approved(turn.conversation_id, result.tool_calls):
                LOGGER.info("Tool calls declined for %s", turn.conversation_id)
                update_state(TurnState.PERSISTED)
                return assistant

            update_state(TurnState.EXECUTING)
            for call in result.tool_calls:
                output = await self._executor.execute(turn.conversation_id, call)
                self._persist(turn, "tool", output, tool_call_id=call.id)
                emit(ToolResult(tool_call_id=call.id, name=call.name, result=output))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _stream_once(self, turn: TurnContext, emit: EmitCallback) -> CompletionResult | None:
        result: CompletionResult | None = None
        stream = turn.backend.stream_completion(turn.messages, turn.params, turn.tools)
        async with aclosing(stream):
            async for event in stream:
                if isinstance(event, Delta):
                    emit(event)
                elif isinstance(event, Error):
                    emit(event)
                    return None
                elif isinstance(event, Complete):
                    result = event.result
                # ToolCallRequested is re-emitted once the calls are persisted.
        if result is None:
            raise TurnCancelled()
        return result

    async def _approved(self, conversation_id: str, calls: Sequence[ToolCall]) -> bool:
        if self._approval is None:
            return True
        decision = self._approval(conversation_id, calls)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)

    def _persist(self, turn: TurnContext, role: str, content: str, **extra: Any) -> Message:
        message = Message.create(
            turn.conversation_id,
            role,  # type: ignore[arg-type]
            content,
            parent=turn.leaf,
            server_id=turn.selection.server_id if role == "assistant" else None,
            model_id=turn.selection.model_id if role == "assistant" else None,
            **extra,
        )
        with self._messages.database.transaction():
            stored = self._messages.insert(message)
            self._conversations.update_active_leaf(turn.conversation_id, stored.id)
        turn.leaf = stored
        turn.created_ids.append(stored.id)
        turn.messages.append(message_to_chat(stored))
        return stored
