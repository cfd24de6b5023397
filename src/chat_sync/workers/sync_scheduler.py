from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager, suppress
from typing import Callable, Iterator, Optional

from chat_sync.errors import ChatSyncError, NetworkError, NotFoundError
from chat_sync.interfaces.protocols import ConversationGateway
from chat_sync.models.conversation import ConversationSummary
from chat_sync.models.message import MessagePage
from chat_sync.state.conversation_store import ConversationStore
from chat_sync.state.message_window import MessageWindow, WindowCache, WindowSnapshot
from chat_sync.state.selection import ActiveSelection

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Async background worker that polls the remote store.

    A repeating timer refreshes the conversation list (and the active message
    window) every ``poll_interval`` seconds. A tick that comes due while the
    previous one is still running is skipped, not queued. On-demand refreshes
    run outside the timer and never shift its phase. Concurrent requests for
    the conversation list, or for older messages of one conversation, share a
    single in-flight call.
    """

    def __init__(
        self,
        gateway: ConversationGateway,
        store: ConversationStore,
        windows: WindowCache,
        selection: ActiveSelection,
        *,
        poll_interval: float = 10.0,
        page_size: int = 20,
        freshness_threshold: float = 30.0,
        conversation_filter: Optional[str] = None,
        time_source: Callable[[], float] = time.monotonic,
        on_conversation_removed: Optional[Callable[[str], None]] = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.gateway = gateway
        self.store = store
        self.windows = windows
        self.selection = selection
        self.poll_interval = poll_interval
        self.page_size = page_size
        self.freshness_threshold = freshness_threshold
        self.conversation_filter = conversation_filter
        self._time = time_source
        self._on_conversation_removed = on_conversation_removed

        self._running = False
        self._task: asyncio.Task | None = None
        self._tick_task: asyncio.Task | None = None
        self._list_task: asyncio.Task | None = None
        self._older_tasks: dict[str, asyncio.Task] = {}

        self.last_error: ChatSyncError | None = None
        self.consecutive_failures = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, *, immediate: bool = True) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self.run(immediate=immediate))

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        tick, self._tick_task = self._tick_task, None
        if tick is not None and not tick.done():
            tick.cancel()
            with suppress(asyncio.CancelledError):
                await tick
        if task is not None:
            logger.info("Sync scheduler stopped")

    async def run(self, *, immediate: bool = True) -> None:
        loop = asyncio.get_running_loop()
        logger.info("Sync scheduler started interval=%ss", self.poll_interval)
        next_due = loop.time() if immediate else loop.time() + self.poll_interval
        try:
            while self._running:
                delay = next_due - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                self._fire_tick()
                next_due += self.poll_interval
                behind = loop.time() - next_due
                if behind > 0:
                    # Missed ticks are dropped; the phase is kept.
                    next_due += (behind // self.poll_interval + 1) * self.poll_interval
        except asyncio.CancelledError:
            logger.debug("Sync scheduler cancelled")
            raise
        finally:
            self._running = False

    def _fire_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._skip_tick("previous tick still running")
            return
        if self._list_task is not None and not self._list_task.done():
            self._skip_tick("conversation list request in flight")
            return
        self._tick_task = asyncio.create_task(self.tick())

    def _skip_tick(self, reason: str) -> None:
        self.skipped_ticks += 1
        logger.warning("Skipping sync tick: %s", reason)

    async def tick(self) -> None:
        """One periodic pass. Failures are logged and retried next interval."""

        try:
            await self.refresh_conversations()
            active = self.selection.conversation_id
            if active is not None and active in self.windows:
                await self.refresh_window(active)
        except ChatSyncError as exc:
            logger.warning(
                "Periodic sync failed (%s); retrying in %ss", exc, self.poll_interval
            )
        except Exception as exc:  # pragma: no cover - background worker safety
            self._record_failure(
                NetworkError("Periodic sync crashed", payload={"error": str(exc)})
            )
            logger.exception("Unexpected error during periodic sync")

    async def refresh_conversations(self) -> list[ConversationSummary]:
        task = self._list_task
        if task is None or task.done():
            task = asyncio.create_task(self._fetch_conversations())
            self._list_task = task
        else:
            logger.debug("Joining in-flight conversation list request")
        return await asyncio.shield(task)

    async def _fetch_conversations(self) -> list[ConversationSummary]:
        logger.debug("Fetching conversation list filter=%s", self.conversation_filter)
        try:
            summaries = await self.gateway.list_conversations(self.conversation_filter)
        except ChatSyncError as exc:
            self._record_failure(exc)
            raise
        removed = self.store.upsert_all(summaries)
        for conversation_id in removed:
            self._drop_local_state(conversation_id)
        self._clear_error()
        logger.info(
            "Conversation list synchronised count=%s revision=%s",
            len(summaries),
            self.store.revision,
        )
        return self.store.all()

    async def open_conversation(self, conversation_id: str) -> Optional[WindowSnapshot]:
        """Load the window if it is missing or stale, otherwise serve the cache."""

        window = self.windows.get_or_create(conversation_id)
        if window.loaded and not window.is_stale(self._time(), self.freshness_threshold):
            return window.snapshot()
        return await self.refresh_window(conversation_id)

    async def register_activity(
        self, conversation_id: Optional[str] = None
    ) -> Optional[WindowSnapshot]:
        target = conversation_id or self.selection.conversation_id
        if target is None:
            return None
        return await self.refresh_window(target)

    async def refresh_window(self, conversation_id: str) -> Optional[WindowSnapshot]:
        """
        Fetch the newest page of ``conversation_id`` into its window.

        Returns ``None`` when the answer is discarded because the conversation
        stopped being the active one while the request was outstanding.
        """

        window = self.windows.get_or_create(conversation_id)
        sequence = self.selection.sequence
        requested_while_active = self.selection.is_current(conversation_id, sequence)

        with self._loading(window):
            page = await self._list_messages(conversation_id, None)

        if self.windows.get(conversation_id) is not window:
            return None
        if requested_while_active and not self.selection.is_current(conversation_id, sequence):
            logger.debug(
                "Discarding stale window response conversation_id=%s sequence=%s",
                conversation_id,
                sequence,
            )
            return None

        added = window.merge_latest(page, self._time())
        self._clear_error()
        logger.debug(
            "Window refreshed conversation_id=%s added=%s total=%s",
            conversation_id,
            added,
            len(window),
        )
        return window.snapshot()

    async def load_older(self, conversation_id: str) -> int:
        task = self._older_tasks.get(conversation_id)
        if task is None or task.done():
            task = asyncio.create_task(self._fetch_older(conversation_id))
            self._older_tasks[conversation_id] = task
        else:
            logger.debug(
                "Joining in-flight history request conversation_id=%s", conversation_id
            )
        return await asyncio.shield(task)

    async def _fetch_older(self, conversation_id: str) -> int:
        window = self.windows.get_or_create(conversation_id)
        if not window.loaded:
            before = len(window)
            await self.refresh_window(conversation_id)
            return len(window) - before
        if not window.has_more or window.cursor is None:
            return 0

        generation = window.generation
        with self._loading(window):
            page = await self._list_messages(conversation_id, window.cursor)

        if self.windows.get(conversation_id) is not window:
            return 0
        if window.generation != generation:
            logger.debug(
                "Discarding older page fetched before a history reset conversation_id=%s",
                conversation_id,
            )
            return 0
        added = window.prepend(page.messages, page.next_cursor, page.has_more)
        self._clear_error()
        logger.debug(
            "Loaded older messages conversation_id=%s added=%s has_more=%s",
            conversation_id,
            added,
            window.has_more,
        )
        return added

    async def _list_messages(
        self, conversation_id: str, cursor: Optional[str]
    ) -> MessagePage:
        try:
            return await self.gateway.list_messages(conversation_id, cursor, self.page_size)
        except NotFoundError as exc:
            exc.conversation_id = exc.conversation_id or conversation_id
            self._record_failure(exc)
            self.forget_conversation(conversation_id)
            raise
        except ChatSyncError as exc:
            self._record_failure(exc)
            raise

    def forget_conversation(self, conversation_id: str) -> None:
        """Drop every local trace of a conversation deleted server-side."""

        self.store.remove(conversation_id)
        self._drop_local_state(conversation_id)

    def _drop_local_state(self, conversation_id: str) -> None:
        self.windows.discard(conversation_id)
        self._older_tasks.pop(conversation_id, None)
        if self.selection.conversation_id == conversation_id:
            self.selection.clear()
            logger.info("Cleared active selection for removed conversation %s", conversation_id)
        if self._on_conversation_removed is not None:
            self._on_conversation_removed(conversation_id)

    @contextmanager
    def _loading(self, window: MessageWindow) -> Iterator[None]:
        window.loads_in_flight += 1
        window.is_loading = True
        try:
            yield
        finally:
            window.loads_in_flight -= 1
            if not window.loads_in_flight:
                window.is_loading = False

    def _record_failure(self, error: ChatSyncError) -> None:
        self.last_error = error
        self.consecutive_failures += 1

    def _clear_error(self) -> None:
        if self.last_error is not None:
            logger.info(
                "Synchronisation recovered after %s failure(s)", self.consecutive_failures
            )
        self.last_error = None
        self.consecutive_failures = 0


__all__ = ["SyncScheduler"]
