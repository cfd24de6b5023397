from __future__ import annotations

import bisect
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from chat_sync.models.message import ClientState, Message, MessagePage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSnapshot:
    """Read-only view of a message window handed to UI code."""

    conversation_id: str
    messages: tuple[Message, ...]
    cursor: Optional[str]
    has_more: bool
    is_loading: bool
    loaded: bool


class MessageWindow:
    """
    Ordered, de-duplicated buffer of one conversation's messages.

    Messages are kept sorted by ``(created_at, id)``. Confirmed history is
    immutable: a message id that is already present is never overwritten by a
    later ``append`` or ``prepend``. No I/O happens here.

    ``generation`` changes whenever confirmed history is reset, so a page
    fetched against the previous history can be recognised and dropped.
    """

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self.cursor: Optional[str] = None
        self.has_more: bool = True
        self.is_loading: bool = False
        self.loads_in_flight = 0
        self.generation = 0
        self.loaded: bool = False
        self.refreshed_at: Optional[float] = None
        self._messages: list[Message] = []
        self._by_id: dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def pending(self) -> list[Message]:
        """Local entries that are still ``pending`` or ``failed``."""

        return [message for message in self._messages if message.is_local]

    def confirmed_for(self, correlation_id: str) -> Optional[Message]:
        """The confirmed message a local send was reconciled into, if any."""

        for message in self._messages:
            if message.correlation_id == correlation_id and not message.is_local:
                return message
        return None

    def prepend(
        self,
        older: Iterable[Message],
        cursor: Optional[str],
        has_more: bool,
    ) -> int:
        """Insert an older page; ids already present are rejected."""

        inserted = 0
        for message in older:
            if not self._belongs(message):
                continue
            if message.id in self._by_id:
                continue
            self._insert(message)
            inserted += 1
        self.cursor = cursor
        self.has_more = has_more
        self.loaded = True
        return inserted

    def append(self, message: Message) -> bool:
        """Insert a new message; returns ``False`` when the id is already known."""

        if not self._belongs(message):
            return False
        if message.id in self._by_id:
            return False
        correlation_id = message.correlation_id
        if (
            correlation_id
            and correlation_id != message.id
            and self._is_local(correlation_id)
        ):
            # The server echoed the id of one of our sends before we reconciled it.
            self.replace_pending(correlation_id, message)
            return True
        self._insert(message)
        return True

    def replace_pending(self, local_id: str, confirmed: Message) -> Message:
        """
        Swap the optimistic entry ``local_id`` for its confirmed counterpart.

        First confirmed wins: when a confirmed message with the same server id
        is already in the window (a poll got there first) the optimistic entry
        is dropped and the correlation id is attached to the existing message.
        """

        if self._is_local(local_id):
            self._remove(local_id)
        confirmed = confirmed.model_copy(
            update={"client_state": ClientState.CONFIRMED, "correlation_id": local_id}
        )
        existing = self._by_id.get(confirmed.id)
        if existing is not None:
            if existing.correlation_id is None:
                linked = existing.model_copy(update={"correlation_id": local_id})
                self._swap(existing, linked)
                return linked
            return existing
        self._insert(confirmed)
        return confirmed

    def mark_failed(self, local_id: str) -> Optional[Message]:
        return self._set_local_state(local_id, ClientState.FAILED)

    def mark_pending(self, local_id: str) -> Optional[Message]:
        return self._set_local_state(local_id, ClientState.PENDING)

    def discard(self, local_id: str) -> bool:
        """Remove an unacknowledged local entry. Confirmed messages stay."""

        if not self._is_local(local_id):
            return False
        self._remove(local_id)
        return True

    def mark_read(self, message_ids: Iterable[str]) -> int:
        updated = 0
        for message_id in message_ids:
            message = self._by_id.get(message_id)
            if message is None or message.is_read or message.is_local:
                continue
            self._swap(message, message.model_copy(update={"is_read": True}))
            updated += 1
        return updated

    def unread_from_others(self, viewer_id: Optional[str]) -> list[Message]:
        return [
            message
            for message in self._messages
            if not message.is_read
            and not message.is_local
            and message.sender_id != viewer_id
        ]

    def merge_latest(self, page: MessagePage, now: float) -> int:
        """
        Merge the newest page of the conversation into the window.

        The first merge also adopts the page cursor. A newest page that shares
        no message with cached confirmed history while the server reports more
        history means messages were missed in between; the confirmed history is
        then replaced by the page and pagination restarts from its cursor.
        """

        incoming = [message for message in page.messages if self._belongs(message)]
        has_confirmed = any(not message.is_local for message in self._messages)
        overlaps = any(message.id in self._by_id for message in incoming)

        if self.loaded and has_confirmed and incoming and not overlaps and page.has_more:
            logger.info(
                "Gap detected in conversation_id=%s; resetting cached history",
                self.conversation_id,
            )
            self._drop_confirmed()
            self.loaded = False

        added = sum(1 for message in incoming if self.append(message))
        if not self.loaded:
            self.cursor = page.next_cursor
            self.has_more = page.has_more
            self.loaded = True
        self.refreshed_at = now
        return added

    def age(self, now: float) -> Optional[float]:
        if self.refreshed_at is None:
            return None
        return now - self.refreshed_at

    def is_stale(self, now: float, threshold: float) -> bool:
        age = self.age(now)
        return age is None or age > threshold

    def snapshot(self) -> WindowSnapshot:
        return WindowSnapshot(
            conversation_id=self.conversation_id,
            messages=tuple(self._messages),
            cursor=self.cursor,
            has_more=self.has_more,
            is_loading=self.is_loading,
            loaded=self.loaded,
        )

    def _belongs(self, message: Message) -> bool:
        if message.conversation_id == self.conversation_id:
            return True
        logger.warning(
            "Ignoring message_id=%s for conversation_id=%s in window %s",
            message.id,
            message.conversation_id,
            self.conversation_id,
        )
        return False

    def _is_local(self, message_id: str) -> bool:
        message = self._by_id.get(message_id)
        return message is not None and message.is_local

    def _set_local_state(self, local_id: str, state: ClientState) -> Optional[Message]:
        if not self._is_local(local_id):
            return None
        current = self._by_id[local_id]
        updated = current.model_copy(update={"client_state": state})
        self._swap(current, updated)
        return updated

    def _insert(self, message: Message) -> None:
        bisect.insort(self._messages, message, key=_sort_key)
        self._by_id[message.id] = message

    def _remove(self, message_id: str) -> None:
        message = self._by_id.pop(message_id)
        self._messages.pop(self._position(message))

    def _swap(self, current: Message, updated: Message) -> None:
        # Only used for updates that keep id and created_at.
        self._messages[self._position(current)] = updated
        self._by_id[updated.id] = updated

    def _position(self, message: Message) -> int:
        index = bisect.bisect_left(self._messages, message.sort_key, key=_sort_key)
        while self._messages[index].id != message.id:
            index += 1
        return index

    def _drop_confirmed(self) -> None:
        kept = [message for message in self._messages if message.is_local]
        self._messages = kept
        self._by_id = {message.id: message for message in kept}
        self.generation += 1


def _sort_key(message: Message) -> tuple:
    return message.sort_key


class WindowCache:
    """Least-recently-used cache of message windows keyed by conversation id."""

    def __init__(self, max_windows: int = 20) -> None:
        if max_windows < 1:
            raise ValueError("max_windows must be at least 1")
        self.max_windows = max_windows
        self._windows: OrderedDict[str, MessageWindow] = OrderedDict()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._windows

    def __len__(self) -> int:
        return len(self._windows)

    def ids(self) -> list[str]:
        return list(self._windows)

    def get(self, conversation_id: str) -> Optional[MessageWindow]:
        return self._windows.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> MessageWindow:
        window = self._windows.get(conversation_id)
        if window is None:
            window = MessageWindow(conversation_id)
            self._windows[conversation_id] = window
        self._windows.move_to_end(conversation_id)
        self._evict(keep=conversation_id)
        return window

    def discard(self, conversation_id: str) -> Optional[MessageWindow]:
        return self._windows.pop(conversation_id, None)

    def _evict(self, keep: str) -> None:
        for conversation_id in list(self._windows):
            if len(self._windows) <= self.max_windows:
                return
            if conversation_id == keep:
                continue
            window = self._windows[conversation_id]
            # Windows holding unacknowledged sends or an outstanding load stay.
            if window.is_loading or window.pending():
                continue
            del self._windows[conversation_id]
            logger.debug("Evicted message window conversation_id=%s", conversation_id)


__all__ = ["MessageWindow", "WindowCache", "WindowSnapshot"]
