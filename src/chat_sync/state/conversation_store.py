from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from chat_sync.models.conversation import ConversationSummary

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Conversation summaries keyed by id, listed most recent activity first.

    Every mutation bumps ``revision`` so derived views can tell when to
    recompute. ``last_activity_at`` never moves backwards for a conversation,
    even when a poll returns an older timestamp than a local activity bump.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ConversationSummary] = {}
        self.revision = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        return self._entries.get(conversation_id)

    def all(self) -> list[ConversationSummary]:
        ordered = sorted(self._entries.values(), key=lambda summary: summary.id)
        ordered.sort(key=lambda summary: summary.last_activity_at, reverse=True)
        return ordered

    def ids(self) -> list[str]:
        return [summary.id for summary in self.all()]

    def upsert_all(
        self, summaries: Iterable[ConversationSummary], *, partial: bool = False
    ) -> list[str]:
        """
        Apply a batch from ``list_conversations``.

        A full batch (the default) replaces the set: conversations missing from
        it are dropped. ``partial=True`` merges and keeps absent entries.
        Returns the ids that were dropped.
        """

        merged: dict[str, ConversationSummary] = dict(self._entries) if partial else {}
        for summary in summaries:
            previous = self._entries.get(summary.id)
            merged[summary.id] = _keep_latest_activity(previous, summary)

        removed = [
            conversation_id
            for conversation_id in self._entries
            if conversation_id not in merged
        ]
        self._entries = merged
        self.revision += 1
        if removed:
            logger.info("Dropped conversations no longer listed: %s", removed)
        return removed

    def apply_local_activity(
        self,
        conversation_id: str,
        timestamp: datetime,
        preview: Optional[str] = None,
    ) -> bool:
        summary = self._entries.get(conversation_id)
        if summary is None:
            return False
        update: dict[str, object] = {}
        if timestamp > summary.last_activity_at:
            update["last_activity_at"] = timestamp
        if preview is not None and update:
            update["last_message_preview"] = preview
        if not update:
            return False
        self._entries[conversation_id] = summary.model_copy(update=update)
        self.revision += 1
        return True

    def mark_read(self, conversation_id: str) -> bool:
        summary = self._entries.get(conversation_id)
        if summary is None or summary.unread_count == 0:
            return False
        self._entries[conversation_id] = summary.model_copy(update={"unread_count": 0})
        self.revision += 1
        return True

    def remove(self, conversation_id: str) -> bool:
        if self._entries.pop(conversation_id, None) is None:
            return False
        self.revision += 1
        return True

    def unread_total(self, conversation_ids: Optional[Iterable[str]] = None) -> int:
        if conversation_ids is None:
            return sum(summary.unread_count for summary in self._entries.values())
        return sum(
            self._entries[conversation_id].unread_count
            for conversation_id in set(conversation_ids)
            if conversation_id in self._entries
        )

    def by_role(self, role: str) -> list[ConversationSummary]:
        return [summary for summary in self.all() if summary.participant_role == role]


def _keep_latest_activity(
    previous: Optional[ConversationSummary], incoming: ConversationSummary
) -> ConversationSummary:
    if previous is None or incoming.last_activity_at >= previous.last_activity_at:
        return incoming
    return incoming.model_copy(
        update={
            "last_activity_at": previous.last_activity_at,
            "last_message_preview": previous.last_message_preview,
        }
    )


__all__ = ["ConversationStore"]
