"""Compaction summary records."""

from __future__ import annotations

import logging
from typing import List, Set

from ..chat.models import CompactionSummary
from ..errors import ConstraintViolation, NotFoundError
from .database import ChatDatabase

__all__ = ["CompactionSummaryStore"]

LOGGER = logging.getLogger(__name__)


class CompactionSummaryStore:
    """Append-only summaries, one list per conversation in creation order."""

    def __init__(self, database: ChatDatabase) -> None:
        self._db = database

    def insert(self, summary: CompactionSummary) -> CompactionSummary:
        """Append a summary that advances the cutoff of its own branch.

        An anchored summary only competes with summaries anchored on its
        anchor's ancestor chain (or carrying no anchor); sibling branches are
        compacted independently. An unanchored summary competes with all.
        """

        with self._db.transaction() as db:
            if summary.conversation_id not in db.conversations:
                raise NotFoundError("conversation", summary.conversation_id)
            if summary.compacted_message_count <= 0:
                raise ConstraintViolation("a compaction summary must cover at least one message")
            lineage = self._lineage(db, summary)
            existing = db.summaries.setdefault(summary.conversation_id, [])
            for previous in existing:
                anchor = previous.inserted_before_message_id
                if lineage is not None and anchor is not None and anchor not in lineage:
                    continue
                if summary.compacted_message_count <= previous.compacted_message_count:
                    raise ConstraintViolation(
                        "compaction summaries must advance the cutoff",
                        previous=previous.compacted_message_count,
                        requested=summary.compacted_message_count,
                    )
            existing.append(summary)
        LOGGER.debug(
            "Stored compaction summary %s for %s covering %d message(s)",
            summary.id,
            summary.conversation_id,
            summary.compacted_message_count,
        )
        return summary

    def by_conversation(self, conversation_id: str) -> List[CompactionSummary]:
        with self._db.transaction() as db:
            return list(db.summaries.get(conversation_id, []))

    def latest(self, conversation_id: str) -> CompactionSummary | None:
        with self._db.transaction() as db:
            items = db.summaries.get(conversation_id)
            return items[-1] if items else None

    def max_compacted_count(self, conversation_id: str) -> int:
        with self._db.transaction() as db:
            return max((item.compacted_message_count for item in db.summaries.get(conversation_id, [])), default=0)

    def delete_by_conversation(self, conversation_id: str) -> None:
        with self._db.transaction() as db:
            db.summaries.pop(conversation_id, None)

    @staticmethod
    def _lineage(db: ChatDatabase, summary: CompactionSummary) -> Set[str] | None:
        """Ids of the anchor and its ancestors, or ``None`` when unanchored."""

        anchor = summary.inserted_before_message_id
        if anchor is None:
            return None
        row = db.messages.get(anchor)
        if row is None or row.message.conversation_id != summary.conversation_id:
            raise ConstraintViolation(
                f"summary anchor {anchor} is not a message of this conversation",
                inserted_before_message_id=anchor,
            )
        lineage: Set[str] = set()
        current: str | None = anchor
        while current is not None and current not in lineage:
            lineage.add(current)
            parent = db.messages.get(current)
            current = parent.message.parent_message_id if parent is not None else None
        return lineage
