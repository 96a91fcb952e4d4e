"""Active-branch reconstruction and sibling navigation."""

from __future__ import annotations

import logging
from typing import List, Tuple

from ..errors import CorruptTreeError, NotFoundError
from ..storage.conversations import ConversationStore
from ..storage.messages import MessageStore
from .models import Message

__all__ = ["BranchResolver"]

LOGGER = logging.getLogger(__name__)


class BranchResolver:
    """Reconstructs root-to-leaf paths from parent links."""

    def __init__(self, messages: MessageStore, conversations: ConversationStore | None = None) -> None:
        self._messages = messages
        self._conversations = conversations

    def active_branch(self, leaf_id: str | None) -> List[Message]:
        """Return the path from the root down to ``leaf_id`` (inclusive).

        The walk is bounded by the leaf's depth, so a parent cycle or a
        depth that lies about the distance to the root is reported as a
        :class:`CorruptTreeError` instead of looping forever.
        """
        if leaf_id is None:
            return []
        with self._messages.database.transaction():
            leaf = self._messages.get(leaf_id)
            if leaf is None:
                raise NotFoundError("message", leaf_id)
            limit = leaf.depth + 1
            path: List[Message] = []
            visited: set[str] = set()
            current: Message | None = leaf
            while current is not None:
                if current.id in visited:
                    raise CorruptTreeError(f"cycle detected at message {current.id}", message_id=current.id)
                if len(path) >= limit:
                    raise CorruptTreeError(
                        f"branch from {leaf_id} is longer than its depth {leaf.depth}", message_id=leaf_id
                    )
                visited.add(current.id)
                path.append(current)
                parent_id = current.parent_message_id
                if parent_id is None:
                    if current.depth != 0:
                        raise CorruptTreeError(
                            f"root message {current.id} has depth {current.depth}", message_id=current.id
                        )
                    break
                parent = self._messages.get(parent_id)
                if parent is None:
                    raise CorruptTreeError(
                        f"message {current.id} references missing parent {parent_id}", message_id=current.id
                    )
                current = parent
        path.reverse()
        return path

    def branch_for(self, conversation_id: str) -> List[Message]:
        """The active branch of a conversation, empty when it has no leaf."""

        conversation = self._require_conversations().require(conversation_id)
        return self.active_branch(conversation.active_leaf_message_id)

    def deepest_default_leaf(self, message_id: str) -> Message:
        """Follow first children down from ``message_id`` until a leaf."""

        current = self._messages.require(message_id)
        while current.child_count > 0:
            children = self._messages.children_of(current.id)
            if not children:
                break
            current = children[0]
        return current

    def siblings(self, message_id: str) -> Tuple[List[Message], int]:
        """Messages sharing ``message_id``'s parent and its index among them."""

        message = self._messages.require(message_id)
        if message.parent_message_id is None:
            group = self._messages.roots_of(message.conversation_id)
        else:
            group = self._messages.children_of(message.parent_message_id)
        index = next((i for i, item in enumerate(group) if item.id == message_id), 0)
        return group, index

    def switch_to_sibling(self, message_id: str, offset: int) -> Message:
        """Move the active leaf onto a neighbouring sibling's default leaf.

        ``offset`` is relative to ``message_id`` and is clamped to the
        available siblings. Returns the new active leaf.
        """
        conversations = self._require_conversations()
        group, index = self.siblings(message_id)
        target_index = max(0, min(len(group) - 1, index + offset))
        target = group[target_index]
        leaf = self.deepest_default_leaf(target.id)
        conversations.update_active_leaf(leaf.conversation_id, leaf.id)
        LOGGER.debug("Switched branch from %s to %s (leaf %s)", message_id, target.id, leaf.id)
        return leaf

    def _require_conversations(self) -> ConversationStore:
        if self._conversations is None:
            raise RuntimeError("BranchResolver was created without a conversation store")
        return self._conversations
