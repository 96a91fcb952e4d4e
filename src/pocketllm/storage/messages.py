"""Message tree storage with denormalized child counters."""

from __future__ import annotations

import logging
from typing import List

from ..chat.models import Message
from ..errors import ConstraintViolation, NotFoundError
from .database import ChatDatabase, MessageRow

__all__ = ["MessageStore"]

LOGGER = logging.getLogger(__name__)


class MessageStore:
    """Owns the message arena: insert, delete, lookups and child ordering.

    Every mutation happens inside :meth:`ChatDatabase.transaction` so the
    parent's ``child_count`` never drifts from its live child list.
    Returned messages are detached copies; callers cannot mutate the
    stored rows.
    """

    def __init__(self, database: ChatDatabase) -> None:
        self._db = database

    @property
    def database(self) -> ChatDatabase:
        return self._db

    def insert(self, message: Message) -> Message:
        """Insert ``message`` and bump its parent's ``child_count``.

        Raises:
            ConstraintViolation: duplicate id, unknown conversation, parent
                missing or in another conversation, or a depth that does
                not follow from the parent.
        """
        with self._db.transaction() as db:
            if message.id in db.messages:
                raise ConstraintViolation(f"message {message.id} already exists", message_id=message.id)
            if message.conversation_id not in db.conversations:
                raise ConstraintViolation(
                    f"conversation {message.conversation_id} does not exist",
                    conversation_id=message.conversation_id,
                )
            parent_row = self._resolve_parent(message)
            expected_depth = parent_row.message.depth + 1 if parent_row is not None else 0
            if message.depth != expected_depth:
                raise ConstraintViolation(
                    f"message {message.id} has depth {message.depth}, expected {expected_depth}",
                    message_id=message.id,
                )

            stored = message.snapshot()
            stored.child_count = 0
            db.messages[stored.id] = MessageRow(message=stored, sequence=db.next_sequence())
            if parent_row is not None:
                parent_row.children.append(stored.id)
                parent_row.message.child_count += 1
            else:
                db.roots.setdefault(stored.conversation_id, []).append(stored.id)
            LOGGER.debug(
                "Inserted %s message %s (parent=%s depth=%s)",
                stored.role,
                stored.id,
                stored.parent_message_id,
                stored.depth,
            )
            return stored.snapshot()

    def delete(self, message_id: str) -> int:
        """Delete a message and its whole subtree.

        Only the deleted message's parent loses a child; descendants are
        removed together with their own counters. Returns the number of
        messages removed.
        """
        with self._db.transaction() as db:
            row = db.messages.get(message_id)
            if row is None:
                raise NotFoundError("message", message_id)
            message = row.message
            if message.parent_message_id is not None:
                parent_row = db.messages.get(message.parent_message_id)
                if parent_row is not None:
                    parent_row.children.remove(message_id)
                    parent_row.message.child_count -= 1
            else:
                roots = db.roots.get(message.conversation_id, [])
                if message_id in roots:
                    roots.remove(message_id)
            removed = self._drop_subtree(db, message_id)
            LOGGER.debug("Deleted message %s and %d descendant(s)", message_id, removed - 1)
            return removed

    def get(self, message_id: str) -> Message | None:
        with self._db.transaction() as db:
            row = db.messages.get(message_id)
            return row.message.snapshot() if row is not None else None

    def require(self, message_id: str) -> Message:
        message = self.get(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        return message

    def children_of(self, parent_id: str) -> List[Message]:
        """Children ordered by creation time, insertion order breaking ties."""

        with self._db.transaction() as db:
            row = db.messages.get(parent_id)
            if row is None:
                return []
            return self._ordered(db, row.children)

    def roots_of(self, conversation_id: str) -> List[Message]:
        with self._db.transaction() as db:
            return self._ordered(db, db.roots.get(conversation_id, []))

    def by_conversation(self, conversation_id: str) -> List[Message]:
        """Every message of a conversation in creation order."""

        with self._db.transaction() as db:
            rows = [row for row in db.messages.values() if row.message.conversation_id == conversation_id]
            rows.sort(key=lambda row: (row.message.created_at, row.sequence))
            return [row.message.snapshot() for row in rows]

    def delete_by_conversation(self, conversation_id: str) -> int:
        with self._db.transaction() as db:
            removed = 0
            for root_id in list(db.roots.get(conversation_id, [])):
                removed += self._drop_subtree(db, root_id)
            db.roots.pop(conversation_id, None)
            return removed

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._db.messages

    def _resolve_parent(self, message: Message) -> MessageRow | None:
        if message.parent_message_id is None:
            return None
        parent_row = self._db.messages.get(message.parent_message_id)
        if parent_row is None:
            raise ConstraintViolation(
                f"parent message {message.parent_message_id} does not exist",
                message_id=message.id,
                parent_message_id=message.parent_message_id,
            )
        if parent_row.message.conversation_id != message.conversation_id:
            raise ConstraintViolation(
                f"parent message {message.parent_message_id} belongs to another conversation",
                message_id=message.id,
                parent_message_id=message.parent_message_id,
            )
        return parent_row

    @staticmethod
    def _ordered(db: ChatDatabase, ids: List[str]) -> List[Message]:
        rows = [db.messages[item] for item in ids if item in db.messages]
        rows.sort(key=lambda row: (row.message.created_at, row.sequence))
        return [row.message.snapshot() for row in rows]

    @staticmethod
    def _drop_subtree(db: ChatDatabase, root_id: str) -> int:
        removed = 0
        pending = [root_id]
        while pending:
            current = pending.pop()
            row = db.messages.pop(current, None)
            if row is None:
                continue
            removed += 1
            pending.extend(row.children)
        return removed
