from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from chat_sync.config import SyncSettings
from chat_sync.errors import ChatSyncError, NetworkError, NotFoundError, ValidationError
from chat_sync.interfaces.protocols import ConversationGateway
from chat_sync.models._types import utcnow
from chat_sync.models.conversation import ConversationSummary
from chat_sync.models.message import Attachment, Message
from chat_sync.outcome import Outcome
from chat_sync.services.filter_index import FilterIndex, FilterMode
from chat_sync.services.send_pipeline import SendPipeline
from chat_sync.state.conversation_store import ConversationStore
from chat_sync.state.message_window import WindowCache, WindowSnapshot
from chat_sync.state.selection import ActiveSelection
from chat_sync.workers.sync_scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class ChatSyncEngine:
    """
    Client-side conversation synchronisation engine.

    Owns the conversation store, the message windows, the active selection,
    the send pipeline and the sync scheduler for one session. Queries return
    immutable snapshots. Commands never raise a :class:`ChatSyncError`; they
    return an :class:`Outcome` holding either the result or the error.
    """

    def __init__(
        self,
        gateway: ConversationGateway,
        settings: Optional[SyncSettings] = None,
        *,
        viewer_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.viewer_id = viewer_id or self.settings.viewer_id
        self.gateway = gateway

        self.store = ConversationStore()
        self.windows = WindowCache(self.settings.max_cached_windows)
        self.selection = ActiveSelection()
        self.filter_index = FilterIndex(self.store, viewer_id=self.viewer_id)
        self.pipeline = SendPipeline(
            gateway,
            self.store,
            self.windows,
            sender_id=self.viewer_id or "me",
            max_body_length=self.settings.max_body_length,
            max_attachment_bytes=self.settings.max_attachment_bytes,
            clock=clock or utcnow,
        )
        self.scheduler = SyncScheduler(
            gateway,
            self.store,
            self.windows,
            self.selection,
            poll_interval=self.settings.poll_interval,
            page_size=self.settings.page_size,
            freshness_threshold=self.settings.freshness_seconds,
            time_source=time_source,
            on_conversation_removed=self.pipeline.forget_conversation,
        )

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> Outcome[list[ConversationSummary]]:
        """Load the conversation list once, then start the periodic timer."""

        if self.scheduler.running:
            return Outcome.success(self.store.all())
        outcome = await self.refresh_conversations()
        await self.scheduler.start(immediate=False)
        return outcome

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def __aenter__(self) -> "ChatSyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # -- queries ---------------------------------------------------------

    def conversations(self) -> list[ConversationSummary]:
        return self.filter_index.conversations()

    def all_conversations(self) -> list[ConversationSummary]:
        return self.store.all()

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self.selection.conversation_id

    def active_conversation(self) -> Optional[ConversationSummary]:
        conversation_id = self.selection.conversation_id
        return self.store.get(conversation_id) if conversation_id else None

    def window_snapshot(
        self, conversation_id: Optional[str] = None
    ) -> Optional[WindowSnapshot]:
        target = conversation_id or self.selection.conversation_id
        if target is None:
            return None
        window = self.windows.get(target)
        return window.snapshot() if window is not None else None

    def unread_total(self, *, filtered: bool = False) -> int:
        if filtered:
            return self.store.unread_total(self.filter_index.ids())
        return self.store.unread_total()

    @property
    def last_error(self) -> Optional[ChatSyncError]:
        return self.scheduler.last_error

    @property
    def filter_mode(self) -> FilterMode:
        return self.filter_index.mode

    @property
    def search_text(self) -> str:
        return self.filter_index.search_text

    def set_filter_mode(self, mode: FilterMode | str) -> None:
        self.filter_index.set_mode(mode)

    def set_search_text(self, text: str) -> None:
        self.filter_index.set_search_text(text)

    # -- commands --------------------------------------------------------

    async def refresh_conversations(self) -> Outcome[list[ConversationSummary]]:
        return await self._guard(
            "refresh_conversations", self.scheduler.refresh_conversations
        )

    async def select_conversation(
        self, conversation_id: Optional[str]
    ) -> Outcome[Optional[WindowSnapshot]]:
        """
        Make ``conversation_id`` the active conversation and load its window.

        Selecting ``None`` closes the active conversation. The snapshot is
        ``None`` when the selection changed again before the load finished.
        """

        self.selection.select(conversation_id)
        if conversation_id is None:
            return Outcome.success(None)

        async def _open() -> Optional[WindowSnapshot]:
            snapshot = await self.scheduler.open_conversation(conversation_id)
            if snapshot is not None and self.settings.auto_mark_read:
                await self._auto_mark_read(conversation_id)
                snapshot = self.window_snapshot(conversation_id)
            return snapshot

        return await self._guard("select_conversation", _open)

    async def register_activity(
        self, conversation_id: Optional[str] = None
    ) -> Outcome[Optional[WindowSnapshot]]:
        return await self._guard(
            "register_activity",
            lambda: self.scheduler.register_activity(conversation_id),
        )

    async def load_older(self, conversation_id: Optional[str] = None) -> Outcome[int]:
        async def _load() -> int:
            return await self.scheduler.load_older(self._target(conversation_id))

        return await self._guard("load_older", _load)

    async def send_message(
        self,
        body: str,
        attachment: Optional[Attachment] = None,
        conversation_id: Optional[str] = None,
    ) -> Outcome[Message]:
        async def _send() -> Message:
            return await self.pipeline.submit(
                self._target(conversation_id), body, attachment
            )

        return await self._guard("send_message", _send)

    async def retry_send(self, correlation_id: str) -> Outcome[Message]:
        return await self._guard(
            "retry_send", lambda: self.pipeline.retry(correlation_id)
        )

    def discard_failed(self, correlation_id: str) -> Outcome[bool]:
        if not self.pipeline.discard(correlation_id):
            return Outcome.failure(
                ValidationError(f"No failed message with correlation id {correlation_id}")
            )
        return Outcome.success(True)

    async def mark_conversation_read(
        self, conversation_id: Optional[str] = None
    ) -> Outcome[int]:
        async def _mark() -> int:
            return await self._mark_read(self._target(conversation_id))

        return await self._guard("mark_conversation_read", _mark)

    async def start_conversation(
        self,
        participant_id: str,
        initial_message: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Outcome[ConversationSummary]:
        """
        Open a conversation with ``participant_id``, creating it if needed.

        A conversation already shared with exactly that counterpart is reused.
        The initial message, if any, goes through the normal send pipeline.
        """

        async def _start() -> ConversationSummary:
            summary = self._find_direct_conversation(participant_id)
            if summary is None:
                participant_ids = [participant_id]
                if self.viewer_id:
                    participant_ids.insert(0, self.viewer_id)
                summary = await self.gateway.create_conversation(participant_ids, subject)
                self.store.upsert_all([summary], partial=True)
                logger.info(
                    "Created conversation conversation_id=%s with participant_id=%s",
                    summary.id,
                    participant_id,
                )
            self.selection.select(summary.id)
            await self.scheduler.open_conversation(summary.id)
            if initial_message and initial_message.strip():
                await self.pipeline.submit(summary.id, initial_message)
            return self.store.get(summary.id) or summary

        return await self._guard("start_conversation", _start)

    async def delete_conversation(self, conversation_id: str) -> Outcome[bool]:
        async def _delete() -> bool:
            await self.gateway.delete_conversation(conversation_id)
            self.scheduler.forget_conversation(conversation_id)
            logger.info("Deleted conversation conversation_id=%s", conversation_id)
            return True

        return await self._guard("delete_conversation", _delete)

    # -- helpers ---------------------------------------------------------

    def _target(self, conversation_id: Optional[str]) -> str:
        target = conversation_id or self.selection.conversation_id
        if target is None:
            raise ValidationError("No conversation selected")
        return target

    def _find_direct_conversation(
        self, participant_id: str
    ) -> Optional[ConversationSummary]:
        for summary in self.store.all():
            ids = summary.participant_ids
            if participant_id not in ids or len(ids) != 2:
                continue
            if self.viewer_id is None or self.viewer_id in ids:
                return summary
        return None

    async def _mark_read(self, conversation_id: str) -> int:
        window = self.windows.get(conversation_id)
        unread = window.unread_from_others(self.viewer_id) if window else []
        message_ids = [message.id for message in unread]
        if message_ids:
            await self.gateway.mark_messages_read(message_ids)
            # The window may have been evicted or dropped while awaiting.
            window = self.windows.get(conversation_id)
            if window is not None:
                window.mark_read(message_ids)
        self.store.mark_read(conversation_id)
        return len(message_ids)

    async def _auto_mark_read(self, conversation_id: str) -> None:
        try:
            marked = await self._mark_read(conversation_id)
        except ChatSyncError as exc:
            logger.warning(
                "Could not mark conversation_id=%s as read: %s", conversation_id, exc
            )
            return
        if marked:
            logger.debug("Marked %s message(s) read conversation_id=%s", marked, conversation_id)

    async def _guard(
        self, operation: str, call: Callable[[], Awaitable[Any]]
    ) -> Outcome[Any]:
        try:
            value = await call()
        except ChatSyncError as exc:
            if isinstance(exc, NotFoundError) and exc.conversation_id:
                self.scheduler.forget_conversation(exc.conversation_id)
            logger.info("%s failed: %s", operation, exc)
            return Outcome.failure(exc)
        except Exception as exc:
            logger.exception("Unexpected error during %s", operation)
            return Outcome.failure(
                NetworkError(
                    f"Unexpected error during {operation}",
                    payload={"error": str(exc)},
                    retryable=False,
                )
            )
        return Outcome.success(value)


__all__ = ["ChatSyncEngine"]
