from __future__ import annotations

import logging
from enum import StrEnum
from typing import Iterable, Optional

from chat_sync.models.conversation import ConversationSummary
from chat_sync.state.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


class FilterMode(StrEnum):
    ALL = "all"
    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


def matches_role(
    summary: ConversationSummary, role: str, viewer_id: Optional[str] = None
) -> bool:
    if summary.participant_role is not None:
        return summary.participant_role == role
    return any(participant.role == role for participant in summary.counterparts(viewer_id))


def matches_text(summary: ConversationSummary, needle: str) -> bool:
    """Case-insensitive substring match on subject and participant names."""

    if not needle:
        return True
    haystack = [summary.subject or ""]
    for participant in summary.participants:
        haystack.extend(participant.search_terms())
    return any(needle in term.casefold() for term in haystack)


def filter_conversations(
    summaries: Iterable[ConversationSummary],
    mode: FilterMode | str = FilterMode.ALL,
    search_text: str = "",
    viewer_id: Optional[str] = None,
) -> list[str]:
    mode = FilterMode(mode)
    needle = search_text.strip().casefold()
    return [
        summary.id
        for summary in summaries
        if (mode is FilterMode.ALL or matches_role(summary, mode.value, viewer_id))
        and matches_text(summary, needle)
    ]


class FilterIndex:
    """
    Lazily recomputed filtered view over a :class:`ConversationStore`.

    The id list is rebuilt on read, and only when the store revision, the
    filter mode or the search text changed since the last read.
    """

    def __init__(self, store: ConversationStore, *, viewer_id: Optional[str] = None) -> None:
        self._store = store
        self._viewer_id = viewer_id
        self._mode = FilterMode.ALL
        self._search_text = ""
        self._cache_key: Optional[tuple[int, FilterMode, str]] = None
        self._ids: list[str] = []
        self.recompute_count = 0

    @property
    def mode(self) -> FilterMode:
        return self._mode

    @property
    def search_text(self) -> str:
        return self._search_text

    def set_mode(self, mode: FilterMode | str) -> None:
        self._mode = FilterMode(mode)

    def set_search_text(self, text: str) -> None:
        self._search_text = text or ""

    def ids(self) -> list[str]:
        key = (self._store.revision, self._mode, self._search_text)
        if key != self._cache_key:
            self._ids = filter_conversations(
                self._store.all(), self._mode, self._search_text, self._viewer_id
            )
            self._cache_key = key
            self.recompute_count += 1
            logger.debug(
                "Filter index recomputed revision=%s mode=%s matches=%s",
                key[0],
                self._mode.value,
                len(self._ids),
            )
        return list(self._ids)

    def conversations(self) -> list[ConversationSummary]:
        summaries = (self._store.get(conversation_id) for conversation_id in self.ids())
        return [summary for summary in summaries if summary is not None]


__all__ = [
    "FilterIndex",
    "FilterMode",
    "filter_conversations",
    "matches_role",
    "matches_text",
]
