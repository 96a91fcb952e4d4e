"""Chat turn orchestration.

:class:`ChatManager` owns the stores and turns a user action (send, edit,
regenerate) into a :class:`TurnStream`: an async iterator fed by a
background task. The task persists the branch as it grows and always
finishes with exactly one of ``Complete``, ``Error`` or ``Cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import fields, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from ..backends.base import BackendAdapter
from ..backends.events import Cancelled, Compacting, Complete, Error, StreamEvent, TERMINAL_EVENTS
from ..errors import ConstraintViolation, PocketLLMError, TurnCancelled, TurnInProgress
from ..services.settings import Settings
from ..storage.conversations import DEFAULT_TITLE, ConversationStore
from ..storage.database import ChatDatabase
from ..storage.messages import MessageStore
from ..storage.summaries import CompactionSummaryStore
from ..tools.executor import ToolExecutor
from ..tools.registry import ToolRegistry
from .branch import BranchResolver
from .compaction import CompactionEngine, CompactionPolicy
from .context import build_context
from .export import export_markdown
from .models import BackendSelection, CompactionSummary, Conversation, GenerationParams, Message
from .tool_loop import ApprovalCallback, ToolInvocationLoop, TurnContext, TurnState

__all__ = ["ChatManager", "TurnState", "TurnStream", "derive_title"]

LOGGER = logging.getLogger(__name__)

BackendProvider = Callable[[BackendSelection], BackendAdapter]

TITLE_LIMIT = 50
_FALLBACK_MAX_TOKENS = 2048
_WINDOW_PER_MAX_TOKENS = 4
_END = object()


def derive_title(text: str) -> str:
    """Title a conversation after its first user message."""

    cleaned = " ".join(text.split())
    if len(cleaned) > TITLE_LIMIT:
        return cleaned[:TITLE_LIMIT] + "..."
    return cleaned


class TurnStream:
    """Consumer side of one chat turn.

    Iterating yields every event until the terminal one. ``cancel`` is
    equivalent to :meth:`ChatManager.stop_generation` for this turn.
    """

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self.state = TurnState.IDLE
        self.final_event: StreamEvent | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is _END:
            # Keep the sentinel so repeated iteration also terminates.
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def collect(self) -> List[StreamEvent]:
        """Drain the stream and return every event."""

        return [event async for event in self]

    async def wait(self) -> StreamEvent | None:
        """Wait for the turn to finish and return its terminal event."""

        if self._task is not None:
            await asyncio.shield(self._task)
        return self.final_event

    def cancel(self) -> bool:
        if self._task is None or self._task.done():
            return False
        self._task.cancel()
        return True

    def emit(self, event: StreamEvent) -> None:
        if isinstance(event, TERMINAL_EVENTS):
            self.final_event = event
        self._queue.put_nowait(event)

    def set_state(self, state: TurnState) -> None:
        if state is not self.state:
            LOGGER.debug("Turn %s: %s -> %s", self.conversation_id, self.state.value, state.value)
            self.state = state

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    def _finish(self) -> None:
        self._queue.put_nowait(_END)


class ChatManager:
    """Runs chat turns against the conversation tree.

    Only one turn may be in flight per conversation; a second request is
    rejected with :class:`TurnInProgress`.
    """

    def __init__(
        self,
        database: ChatDatabase,
        backends: BackendProvider,
        *,
        tools: ToolRegistry | None = None,
        settings: Settings | None = None,
        approval: ApprovalCallback | None = None,
    ) -> None:
        self._database = database
        self._backends = backends
        self._settings = settings or Settings()
        self.conversations = ConversationStore(database)
        self.messages = MessageStore(database)
        self.summaries = CompactionSummaryStore(database)
        self.branches = BranchResolver(self.messages, self.conversations)
        self.tools = tools or ToolRegistry(database)
        compaction = self._settings.compaction
        self.compaction = CompactionEngine(
            self.summaries,
            CompactionPolicy(
                threshold=compaction.threshold,
                retained_tail=compaction.retained_tail,
                manual_tail=compaction.manual_tail,
                summary_max_tokens=compaction.summary_max_tokens,
                summary_temperature=compaction.summary_temperature,
            ),
        )
        self._tool_loop = ToolInvocationLoop(
            ToolExecutor(self.tools, timeout=self._settings.tool_timeout),
            self.messages,
            self.conversations,
            max_rounds=self._settings.max_tool_rounds,
            approval=approval,
        )
        self._active: Dict[str, TurnStream] = {}

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def new_conversation(self, title: str = DEFAULT_TITLE, **parameters: Any) -> Conversation:
        return self.conversations.create(title, **parameters)

    def active_branch(self, conversation_id: str) -> List[Message]:
        return self.branches.branch_for(conversation_id)

    def switch_branch(self, message_id: str, offset: int) -> Message:
        """Move the active leaf to a sibling of ``message_id``."""

        message = self.messages.require(message_id)
        self._ensure_idle(message.conversation_id)
        return self.branches.switch_to_sibling(message_id, offset)

    def export_markdown(self, conversation_id: str) -> str:
        conversation = self.conversations.require(conversation_id)
        return export_markdown(conversation, self.branches.branch_for(conversation_id))

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    def send_message(
        self,
        conversation_id: str,
        text: str,
        selection: BackendSelection,
        params: GenerationParams | None = None,
        images: Sequence[str] = (),
    ) -> TurnStream:
        """Append a user message under the active leaf and start a reply.

        Empty text with no images generates a new reply under the current
        active leaf instead of adding a user message.

        Raises:
            TurnInProgress: A turn is already running for the conversation.
            NotFoundError: The conversation does not exist.
            ConstraintViolation: Nothing to reply to.
        """
        self._ensure_idle(conversation_id)
        loop = asyncio.get_running_loop()
        stream = TurnStream(conversation_id)
        stream.set_state(TurnState.AWAITING_USER_PERSIST)
        conversation = self.conversations.require(conversation_id)
        previous_leaf = conversation.active_leaf_message_id
        if not text.strip() and not images:
            if previous_leaf is None:
                raise ConstraintViolation("conversation has no message to reply to", conversation_id=conversation_id)
            anchor = self.messages.require(previous_leaf)
        else:
            anchor = self._append_user_message(conversation, text, images)
        return self._start(loop, stream, anchor, selection, params, restore_leaf_id=anchor.id)

    def regenerate(
        self,
        message_id: str,
        selection: BackendSelection,
        params: GenerationParams | None = None,
    ) -> TurnStream:
        """Generate an alternate reply next to ``message_id``.

        For an assistant message the new reply becomes its sibling; for any
        other message it becomes an additional child.
        """
        message = self.messages.require(message_id)
        conversation_id = message.conversation_id
        self._ensure_idle(conversation_id)
        loop = asyncio.get_running_loop()
        stream = TurnStream(conversation_id)
        stream.set_state(TurnState.AWAITING_USER_PERSIST)
        anchor = message
        if message.role == "assistant":
            if message.parent_message_id is None:
                raise ConstraintViolation("assistant message has no parent to regenerate from", message_id=message_id)
            anchor = self.messages.require(message.parent_message_id)
        previous_leaf = self.conversations.require(conversation_id).active_leaf_message_id
        self.conversations.update_active_leaf(conversation_id, anchor.id)
        return self._start(loop, stream, anchor, selection, params, restore_leaf_id=previous_leaf)

    def edit_message(
        self,
        message_id: str,
        text: str,
        selection: BackendSelection,
        params: GenerationParams | None = None,
        images: Sequence[str] | None = None,
    ) -> TurnStream:
        """Branch off a user message with new text and reply to it."""

        original = self.messages.require(message_id)
        conversation_id = original.conversation_id
        self._ensure_idle(conversation_id)
        if original.role != "user":
            raise ConstraintViolation("only user messages can be edited", message_id=message_id)
        if not text.strip() and not (images or original.image_urls):
            raise ConstraintViolation("edited message is empty", message_id=message_id)
        loop = asyncio.get_running_loop()
        stream = TurnStream(conversation_id)
        stream.set_state(TurnState.AWAITING_USER_PERSIST)
        parent = self.messages.get(original.parent_message_id) if original.parent_message_id else None
        edited = Message.create(
            conversation_id,
            "user",
            text,
            parent=parent,
            image_urls=tuple(images) if images is not None else original.image_urls,
        )
        with self._database.transaction():
            stored = self.messages.insert(edited)
            self.conversations.update_active_leaf(conversation_id, stored.id)
        return self._start(loop, stream, stored, selection, params, restore_leaf_id=stored.id)

    def stop_generation(self, conversation_id: str | None = None) -> bool:
        """Cancel the in-flight turn of one conversation, or of all of them."""

        if conversation_id is not None:
            stream = self._active.get(conversation_id)
            return stream.cancel() if stream is not None else False
        cancelled = False
        for stream in list(self._active.values()):
            cancelled = stream.cancel() or cancelled
        return cancelled

    # ------------------------------------------------------------------
    # Tree edits
    # ------------------------------------------------------------------
    def delete_message(self, message_id: str) -> int:
        """Delete a message with its subtree and repair the active leaf.

        Returns:
            Number of messages removed.
        """
        message = self.messages.require(message_id)
        conversation_id = message.conversation_id
        self._ensure_idle(conversation_id)
        with self._database.transaction():
            conversation = self.conversations.require(conversation_id)
            leaf_id = conversation.active_leaf_message_id
            on_branch = leaf_id is None or any(
                item.id == message_id for item in self.branches.active_branch(leaf_id)
            )
            removed = self.messages.delete(message_id)
            if on_branch:
                self.conversations.update_active_leaf(conversation_id, self._fallback_leaf(message))
        LOGGER.info("Deleted %d message(s) from %s", removed, conversation_id)
        return removed

    async def compact_conversation(
        self,
        conversation_id: str,
        selection: BackendSelection,
    ) -> Optional[CompactionSummary]:
        """Summarize all but the last few messages of the active branch."""

        self._ensure_idle(conversation_id)
        branch = self.branches.branch_for(conversation_id)
        backend = self._backends(selection)
        prior = self.compaction.current_summary(conversation_id, branch)
        return await self.compaction.compact(
            conversation_id,
            branch,
            backend,
            tail=self.compaction.policy.manual_tail,
            prior=prior,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_idle(self, conversation_id: str) -> None:
        if conversation_id in self._active:
            raise TurnInProgress(conversation_id)

    def _append_user_message(self, conversation: Conversation, text: str, images: Sequence[str]) -> Message:
        with self._database.transaction():
            leaf_id = conversation.active_leaf_message_id
            parent = self.messages.require(leaf_id) if leaf_id is not None else None
            message = Message.create(conversation.id, "user", text, parent=parent, image_urls=tuple(images))
            stored = self.messages.insert(message)
            self.conversations.update_active_leaf(conversation.id, stored.id)
            if conversation.title == DEFAULT_TITLE and parent is None and text.strip():
                self.conversations.rename(conversation.id, derive_title(text))
        return stored

    def _fallback_leaf(self, deleted: Message) -> str | None:
        if deleted.parent_message_id is not None:
            return deleted.parent_message_id
        roots = self.messages.roots_of(deleted.conversation_id)
        if not roots:
            return None
        return self.branches.deepest_default_leaf(roots[-1].id).id

    def _start(
        self,
        loop: asyncio.AbstractEventLoop,
        stream: TurnStream,
        anchor: Message,
        selection: BackendSelection,
        params: GenerationParams | None,
        *,
        restore_leaf_id: str | None,
    ) -> TurnStream:
        self._active[stream.conversation_id] = stream
        task = loop.create_task(self._run_turn(stream, anchor, selection, params, restore_leaf_id))
        stream._attach(task)
        task.add_done_callback(lambda done: self._on_turn_done(done, stream, restore_leaf_id))
        return stream

    def _on_turn_done(self, task: asyncio.Task[None], stream: TurnStream, restore_leaf_id: str | None) -> None:
        # Only reached when the task was cancelled before its body ran.
        if not task.cancelled():
            return
        if self._active.get(stream.conversation_id) is stream:
            del self._active[stream.conversation_id]
        self._rollback(stream.conversation_id, [], restore_leaf_id)
        stream.set_state(TurnState.CANCELLED)
        stream.emit(Cancelled())
        stream._finish()

    async def _run_turn(
        self,
        stream: TurnStream,
        anchor: Message,
        selection: BackendSelection,
        overrides: GenerationParams | None,
        restore_leaf_id: str | None,
    ) -> None:
        conversation_id = stream.conversation_id
        turn: TurnContext | None = None
        try:
            backend = self._backends(selection)
            conversation = self.conversations.set_last_backend(conversation_id, selection.server_id, selection.model_id)
            params = self._resolve_params(conversation, overrides)
            branch = self.branches.active_branch(anchor.id)
            summary = await self._maybe_compact(stream, conversation_id, branch, backend, params)
            turn = TurnContext(
                conversation_id=conversation_id,
                selection=selection,
                backend=backend,
                params=params,
                messages=build_context(branch, system_prompt=params.system_prompt, summary=summary),
                leaf=anchor,
                tools=self.tools.to_openai_tools(conversation_id) or None,
            )
            message = await self._tool_loop.run(turn, stream.emit, stream.set_state)
            if message is not None:
                stream.emit(Complete(message=message))
            else:
                self._restore_unchanged(conversation_id, turn, restore_leaf_id)
        except (asyncio.CancelledError, TurnCancelled):
            self._rollback(conversation_id, turn.created_ids if turn is not None else [], restore_leaf_id)
            stream.set_state(TurnState.CANCELLED)
            stream.emit(Cancelled())
        except PocketLLMError as exc:
            LOGGER.warning("Chat turn for %s failed: %s", conversation_id, exc.message)
            self._restore_unchanged(conversation_id, turn, restore_leaf_id)
            stream.set_state(TurnState.ERROR)
            stream.emit(Error(exc.message, exc.to_dict()))
        except Exception as exc:
            LOGGER.exception("Unexpected failure during chat turn for %s", conversation_id)
            self._restore_unchanged(conversation_id, turn, restore_leaf_id)
            stream.set_state(TurnState.ERROR)
            stream.emit(Error(f"Unexpected error: {exc}", {"type": exc.__class__.__name__}))
        finally:
            if self._active.get(conversation_id) is stream:
                del self._active[conversation_id]
            stream._finish()

    async def _maybe_compact(
        self,
        stream: TurnStream,
        conversation_id: str,
        branch: List[Message],
        backend: BackendAdapter,
        params: GenerationParams,
    ) -> CompactionSummary | None:
        summary = self.compaction.current_summary(conversation_id, branch)
        if not self._settings.compaction.enabled:
            return summary
        window = self._context_window(backend, params)
        if not self.compaction.needs_compaction(branch, window, summary):
            return summary
        stream.emit(Compacting())
        created = await self.compaction.maybe_compact(conversation_id, branch, backend, window)
        return created or summary

    def _resolve_params(self, conversation: Conversation, overrides: GenerationParams | None) -> GenerationParams:
        params = self._settings.generation_defaults().overlay(conversation)
        if overrides is None:
            return params
        explicit = {
            item.name: getattr(overrides, item.name)
            for item in fields(GenerationParams)
            if getattr(overrides, item.name) is not None
        }
        return replace(params, **explicit) if explicit else params

    @staticmethod
    def _context_window(backend: BackendAdapter, params: GenerationParams) -> int:
        if params.context_window:
            return params.context_window
        window = getattr(backend, "context_window", None)
        if isinstance(window, int) and window > 0:
            return window
        return (params.max_tokens or _FALLBACK_MAX_TOKENS) * _WINDOW_PER_MAX_TOKENS

    def _rollback(self, conversation_id: str, created_ids: Sequence[str], restore_leaf_id: str | None) -> None:
        with self._database.transaction():
            removed = 0
            for message_id in created_ids:
                if message_id in self.messages:
                    removed += self.messages.delete(message_id)
            if restore_leaf_id is not None and restore_leaf_id not in self.messages:
                restore_leaf_id = None
            self.conversations.update_active_leaf(conversation_id, restore_leaf_id)
        LOGGER.info("Turn for %s cancelled; discarded %d message(s)", conversation_id, removed)

    def _restore_unchanged(self, conversation_id: str, turn: TurnContext | None, restore_leaf_id: str | None) -> None:
        # A failed turn that persisted nothing leaves the leaf where it was.
        if turn is not None and turn.created_ids:
            return
        if restore_leaf_id is None or restore_leaf_id not in self.messages:
            return
        self.conversations.update_active_leaf(conversation_id, restore_leaf_id)
