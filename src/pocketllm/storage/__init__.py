"""Storage collaborators: an in-memory arena plus per-table stores."""

from .conversations import DEFAULT_TITLE, ConversationStore
from .database import ChatDatabase
from .messages import MessageStore
from .servers import ServerProfileStore
from .summaries import CompactionSummaryStore

__all__ = [
    "ChatDatabase",
    "ConversationStore",
    "CompactionSummaryStore",
    "DEFAULT_TITLE",
    "MessageStore",
    "ServerProfileStore",
]
