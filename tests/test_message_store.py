"""Tests for the message tree store."""

from __future__ import annotations

import pytest

from pocketllm.chat.models import Message
from pocketllm.errors import ConstraintViolation, NotFoundError
from pocketllm.storage import ConversationStore, MessageStore


def _child_count_matches(messages: MessageStore, conversation_id: str) -> None:
    for message in messages.by_conversation(conversation_id):
        assert message.child_count == len(messages.children_of(message.id))


def test_insert_increments_parent_child_count(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))
    first = messages.insert(Message.create(conversation.id, "assistant", "a", parent=root))
    messages.insert(Message.create(conversation.id, "assistant", "b", parent=root))

    assert messages.require(root.id).child_count == 2
    assert first.depth == 1
    _child_count_matches(messages, conversation.id)


def test_insert_rejects_missing_parent(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    orphan = Message(
        id="orphan",
        conversation_id=conversation.id,
        role="user",
        content="x",
        parent_message_id="missing",
        depth=1,
    )

    with pytest.raises(ConstraintViolation):
        messages.insert(orphan)
    assert "orphan" not in messages


def test_insert_rejects_cross_conversation_parent(conversations: ConversationStore, messages: MessageStore) -> None:
    first = conversations.create()
    second = conversations.create()
    root = messages.insert(Message.create(first.id, "user", "hi"))

    with pytest.raises(ConstraintViolation):
        messages.insert(Message.create(second.id, "assistant", "x", parent=root))
    assert messages.require(root.id).child_count == 0


def test_insert_rejects_inconsistent_depth(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))
    bad = Message.create(conversation.id, "assistant", "x", parent=root)
    bad.depth = 5

    with pytest.raises(ConstraintViolation):
        messages.insert(bad)


def test_insert_rejects_duplicate_id(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))

    with pytest.raises(ConstraintViolation):
        messages.insert(root)


def test_delete_subtree_decrements_only_direct_parent(
    conversations: ConversationStore, messages: MessageStore
) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))
    reply = messages.insert(Message.create(conversation.id, "assistant", "hello", parent=root))
    follow_up = messages.insert(Message.create(conversation.id, "user", "more", parent=reply))
    messages.insert(Message.create(conversation.id, "assistant", "sure", parent=follow_up))
    sibling = messages.insert(Message.create(conversation.id, "assistant", "alt", parent=root))

    removed = messages.delete(reply.id)

    assert removed == 3
    assert messages.require(root.id).child_count == 1
    assert [item.id for item in messages.children_of(root.id)] == [sibling.id]
    _child_count_matches(messages, conversation.id)


def test_delete_root_removes_from_roots(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    first = messages.insert(Message.create(conversation.id, "user", "one"))
    second = messages.insert(Message.create(conversation.id, "user", "two"))

    assert messages.delete(first.id) == 1
    assert [item.id for item in messages.roots_of(conversation.id)] == [second.id]


def test_delete_unknown_message_raises(messages: MessageStore) -> None:
    with pytest.raises(NotFoundError):
        messages.delete("nope")


def test_children_keep_insertion_order(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))
    created = [
        messages.insert(Message.create(conversation.id, "assistant", str(index), parent=root)) for index in range(4)
    ]

    assert [item.id for item in messages.children_of(root.id)] == [item.id for item in created]


def test_returned_messages_are_detached(conversations: ConversationStore, messages: MessageStore) -> None:
    conversation = conversations.create()
    root = messages.insert(Message.create(conversation.id, "user", "hi"))

    copy = messages.require(root.id)
    copy.child_count = 99

    assert messages.require(root.id).child_count == 0
