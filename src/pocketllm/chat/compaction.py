"""Summarize old history so prompts stay inside the context window."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..backends.base import BackendAdapter
from ..errors import ConstraintViolation
from ..storage.summaries import CompactionSummaryStore
from ..utils.tokens import estimate_message_tokens, estimate_tokens
from .context import applicable_summary
from .models import CompactionSummary, GenerationParams, Message, new_id

__all__ = ["CompactionEngine", "CompactionPolicy", "build_compaction_prompt"]

LOGGER = logging.getLogger(__name__)

_FRESH_INSTRUCTIONS = (
    "Summarize the ENTIRE following conversation from beginning to end. "
    "Cover every topic, key fact, decision, and piece of content discussed; do not focus only on recent messages. "
    "Organize chronologically. The summary must preserve enough context to continue the conversation coherently. "
    "Respond with only the summary, no preamble."
)
_UPDATE_INSTRUCTIONS = (
    "You have an existing summary of an earlier portion of a conversation. New messages have occurred since "
    "that summary. Produce an updated summary that integrates BOTH the existing summary AND the new messages. "
    "Cover every topic, key fact, decision, and piece of content. Organize chronologically. "
    "The summary must preserve enough context to continue the conversation coherently. "
    "Respond with only the updated summary, no preamble."
)


@dataclass(slots=True, frozen=True)
class CompactionPolicy:
    """Tunables for automatic and manual compaction."""

    threshold: float = 0.75
    retained_tail: int = 4
    manual_tail: int = 2
    summary_max_tokens: int = 2048
    summary_temperature: float = 0.3


def build_compaction_prompt(new_messages: Sequence[Message], prior_summary: str | None) -> List[Dict[str, Any]]:
    transcript = "\n".join(f"{message.role}: {message.content}" for message in new_messages)
    if prior_summary is not None:
        return [
            {"role": "system", "content": _UPDATE_INSTRUCTIONS},
            {"role": "user", "content": f"EXISTING SUMMARY:\n{prior_summary}\n\nNEW MESSAGES:\n{transcript}"},
        ]
    return [
        {"role": "system", "content": _FRESH_INSTRUCTIONS},
        {"role": "user", "content": transcript},
    ]


class CompactionEngine:
    """Decides when to compact and writes :class:`CompactionSummary` rows.

    Summaries only ever extend the covered prefix: each run sends the
    messages added since the previous cutoff together with the previous
    summary text, and records the new cutoff.
    """

    def __init__(self, summaries: CompactionSummaryStore, policy: CompactionPolicy | None = None) -> None:
        self._summaries = summaries
        self._policy = policy or CompactionPolicy()

    @property
    def policy(self) -> CompactionPolicy:
        return self._policy

    def current_summary(self, conversation_id: str, branch: Sequence[Message]) -> Optional[CompactionSummary]:
        return applicable_summary(self._summaries.by_conversation(conversation_id), branch)

    def estimate(self, branch: Sequence[Message], summary: CompactionSummary | None) -> int:
        """Tokens the branch costs once the summary replaces its prefix."""

        if summary is None:
            return estimate_message_tokens(branch)
        tail = branch[summary.compacted_message_count:]
        return estimate_tokens(summary.summary) + estimate_message_tokens(tail)

    def needs_compaction(
        self,
        branch: Sequence[Message],
        context_window: int,
        summary: CompactionSummary | None = None,
    ) -> bool:
        if len(branch) <= self._policy.retained_tail:
            return False
        if summary is not None and summary.compacted_message_count >= len(branch) - self._policy.retained_tail:
            return False
        limit = int(context_window * self._policy.threshold)
        return self.estimate(branch, summary) > limit

    async def maybe_compact(
        self,
        conversation_id: str,
        branch: Sequence[Message],
        backend: BackendAdapter,
        context_window: int,
    ) -> Optional[CompactionSummary]:
        """Compact automatically when the branch crosses the threshold."""

        summary = self.current_summary(conversation_id, branch)
        if not self.needs_compaction(branch, context_window, summary):
            return None
        LOGGER.info(
            "Compacting conversation %s: ~%d tokens exceeds %.0f%% of %d",
            conversation_id,
            self.estimate(branch, summary),
            self._policy.threshold * 100,
            context_window,
        )
        return await self.compact(conversation_id, branch, backend, tail=self._policy.retained_tail, prior=summary)

    async def compact(
        self,
        conversation_id: str,
        branch: Sequence[Message],
        backend: BackendAdapter,
        *,
        tail: int,
        prior: CompactionSummary | None = None,
    ) -> Optional[CompactionSummary]:
        """Summarize everything but the last ``tail`` messages.

        Returns ``None`` when there is nothing new to cover or when the
        summarizer fails; failures are logged and never raised.
        """
        covered = len(branch) - tail
        # Keep a tool-call group whole: never start the tail on a tool result.
        while 0 < covered < len(branch) and branch[covered].role == "tool":
            covered -= 1
        previous_count = prior.compacted_message_count if prior is not None else 0
        if covered <= 0 or covered <= previous_count:
            return None
        new_messages = branch[previous_count:covered]
        prompt = build_compaction_prompt(new_messages, prior.summary if prior is not None else None)
        params = GenerationParams(
            temperature=self._policy.summary_temperature,
            max_tokens=self._policy.summary_max_tokens,
        )
        try:
            text = (await backend.complete(prompt, params)).strip()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Compaction failed, continuing without summary: %s", exc)
            return None
        if not text:
            LOGGER.warning("Compaction produced an empty summary for %s", conversation_id)
            return None
        summary = CompactionSummary(
            id=new_id(),
            conversation_id=conversation_id,
            summary=text,
            compacted_message_count=covered,
            inserted_before_message_id=branch[covered].id,
        )
        try:
            self._summaries.insert(summary)
        except ConstraintViolation as exc:
            LOGGER.warning("Discarding compaction summary: %s", exc)
            return None
        LOGGER.info("Compacted %d message(s) of %s", covered, conversation_id)
        return summary
