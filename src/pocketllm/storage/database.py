"""In-memory arena backing every store of the chat core.

All tables live in plain dictionaries keyed by id. A single re-entrant
lock guards them so a store can combine several mutations (insert a
message, bump its parent's ``child_count``, move the active leaf) into
one indivisible step via :meth:`ChatDatabase.transaction`.
"""

from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List

from ..chat.models import CompactionSummary, Conversation, Message, ServerProfile, ToolDefinition

__all__ = ["ChatDatabase", "MessageRow"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MessageRow:
    """Arena slot for one message plus its adjacency index."""

    message: Message
    sequence: int
    children: List[str] = field(default_factory=list)


class ChatDatabase:
    """Shared tables and the lock that makes multi-table updates atomic."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, MessageRow] = {}
        self.roots: Dict[str, List[str]] = {}
        self.summaries: Dict[str, List[CompactionSummary]] = {}
        self.servers: Dict[str, ServerProfile] = {}
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_overrides: Dict[tuple[str, str], bool] = {}

    @contextmanager
    def transaction(self) -> Iterator["ChatDatabase"]:
        """Hold the database lock for the duration of the block."""

        with self._lock:
            yield self

    def next_sequence(self) -> int:
        """Monotonic insertion counter used to break creation-time ties."""

        return next(self._sequence)

