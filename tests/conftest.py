"""Shared pytest fixtures."""

from __future__ import annotations

import logging
from typing import Iterator

import pytest

from pocketllm.chat.models import BackendSelection
from pocketllm.storage import ChatDatabase, ConversationStore, MessageStore


@pytest.fixture
def database() -> ChatDatabase:
    return ChatDatabase()


@pytest.fixture
def conversations(database: ChatDatabase) -> ConversationStore:
    return ConversationStore(database)


@pytest.fixture
def messages(database: ChatDatabase) -> MessageStore:
    return MessageStore(database)


@pytest.fixture
def selection() -> BackendSelection:
    return BackendSelection(server_id="server-1", model_id="test-model")


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "POCKETLLM_LOG_DIR",
        "POCKETLLM_DEBUG_LOGGING",
        "POCKETLLM_REQUEST_TIMEOUT",
        "POCKETLLM_MAX_TOOL_ROUNDS",
        "POCKETLLM_MODELS_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
