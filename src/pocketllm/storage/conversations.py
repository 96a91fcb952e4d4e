"""Conversation records and the active-leaf pointer."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, List

from ..chat.models import Conversation, new_id
from ..errors import ConstraintViolation, NotFoundError
from .database import ChatDatabase

__all__ = ["ConversationStore", "DEFAULT_TITLE"]

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"

_PARAMETER_FIELDS = (
    "system_prompt",
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """Create, look up and update conversations.

    Deleting a conversation cascades to its messages, compaction
    summaries and tool overrides.
    """

    def __init__(self, database: ChatDatabase) -> None:
        self._db = database

    def create(self, title: str = DEFAULT_TITLE, **fields: Any) -> Conversation:
        conversation = Conversation(id=fields.pop("id", None) or new_id(), title=title, **fields)
        with self._db.transaction() as db:
            if conversation.id in db.conversations:
                raise ConstraintViolation(f"conversation {conversation.id} already exists")
            db.conversations[conversation.id] = conversation
        LOGGER.debug("Created conversation %s", conversation.id)
        return replace(conversation)

    def get(self, conversation_id: str) -> Conversation | None:
        with self._db.transaction() as db:
            conversation = db.conversations.get(conversation_id)
            return replace(conversation) if conversation is not None else None

    def require(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def list_recent(self) -> List[Conversation]:
        """All conversations, most recently updated first."""

        with self._db.transaction() as db:
            items = sorted(db.conversations.values(), key=lambda item: item.updated_at, reverse=True)
            return [replace(item) for item in items]

    def rename(self, conversation_id: str, title: str) -> Conversation:
        return self._update(conversation_id, title=title)

    def update_active_leaf(self, conversation_id: str, leaf_id: str | None) -> Conversation:
        """Point the conversation at a new branch tip.

        The leaf must be a message of this conversation; ``None`` clears
        the pointer.
        """
        with self._db.transaction() as db:
            if leaf_id is not None:
                row = db.messages.get(leaf_id)
                if row is None:
                    raise NotFoundError("message", leaf_id)
                if row.message.conversation_id != conversation_id:
                    raise ConstraintViolation(
                        f"message {leaf_id} does not belong to conversation {conversation_id}",
                        message_id=leaf_id,
                        conversation_id=conversation_id,
                    )
            return self._update(conversation_id, active_leaf_message_id=leaf_id)

    def update_parameters(self, conversation_id: str, **overrides: Any) -> Conversation:
        """Replace generation-parameter overrides; ``None`` means inherit."""

        unknown = set(overrides) - set(_PARAMETER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown conversation parameters: {sorted(unknown)}")
        return self._update(conversation_id, **overrides)

    def set_last_backend(self, conversation_id: str, server_id: str | None, model_id: str | None) -> Conversation:
        return self._update(conversation_id, last_server_id=server_id, last_model_id=model_id)

    def delete(self, conversation_id: str) -> None:
        with self._db.transaction() as db:
            if db.conversations.pop(conversation_id, None) is None:
                raise NotFoundError("conversation", conversation_id)
            removed = 0
            pending = list(db.roots.pop(conversation_id, []))
            while pending:
                row = db.messages.pop(pending.pop(), None)
                if row is not None:
                    removed += 1
                    pending.extend(row.children)
            db.summaries.pop(conversation_id, None)
            for key in [key for key in db.tool_overrides if key[0] == conversation_id]:
                del db.tool_overrides[key]
        LOGGER.info("Deleted conversation %s (%d message(s))", conversation_id, removed)

    def _update(self, conversation_id: str, **changes: Any) -> Conversation:
        with self._db.transaction() as db:
            current = db.conversations.get(conversation_id)
            if current is None:
                raise NotFoundError("conversation", conversation_id)
            updated = replace(current, updated_at=_utcnow(), **changes)
            db.conversations[conversation_id] = updated
            return replace(updated)
