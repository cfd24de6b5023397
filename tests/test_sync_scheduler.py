from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from chat_sync.adapters.memory_adapter import InMemoryChatGateway
from chat_sync.errors import NetworkError, NotFoundError
from chat_sync.models.message import MessagePage
from chat_sync.state.conversation_store import ConversationStore
from chat_sync.state.message_window import WindowCache
from chat_sync.state.selection import ActiveSelection
from chat_sync.workers.sync_scheduler import SyncScheduler

from helpers import FakeClock, at, make_message, settle


def _scheduler(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
    **kwargs,
) -> SyncScheduler:
    return SyncScheduler(gateway, store, windows, selection, **kwargs)


def _seed_history(gateway: InMemoryChatGateway, count: int) -> None:
    for index in range(count):
        gateway.queue_incoming(
            "c1", f"message {index}", sender_id="bob", created_at=at(index + 1)
        )


class PagedGateway(InMemoryChatGateway):
    """Serves fixed pages keyed by cursor."""

    def __init__(self, pages: dict[Optional[str], MessagePage]) -> None:
        super().__init__(viewer_id="me")
        self.pages = pages
        self.gates: dict[Optional[str], asyncio.Event] = {}

    async def list_messages(
        self, conversation_id: str, cursor: Optional[str], limit: int
    ) -> MessagePage:
        self.calls["list_messages"] += 1
        gate = self.gates.get(cursor)
        if gate is not None:
            await gate.wait()
        return self.pages[cursor]


@pytest.mark.asyncio
async def test_concurrent_list_refreshes_share_one_request(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    gateway.block("list_conversations")

    first = asyncio.create_task(scheduler.refresh_conversations())
    second = asyncio.create_task(scheduler.refresh_conversations())
    await settle()
    gateway.release("list_conversations")

    first_result, second_result = await asyncio.gather(first, second)

    assert gateway.calls["list_conversations"] == 1
    assert [s.id for s in first_result] == [s.id for s in second_result] == ["c1"]


@pytest.mark.asyncio
async def test_tick_is_skipped_while_list_request_is_in_flight(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    gateway.block("list_conversations")
    on_demand = asyncio.create_task(scheduler.refresh_conversations())
    await settle()

    scheduler._fire_tick()

    assert scheduler.skipped_ticks == 1
    gateway.release("list_conversations")
    await on_demand
    assert gateway.calls["list_conversations"] == 1


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_cancels_the_timer(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection, poll_interval=60)

    await scheduler.start()
    timer = scheduler._task
    await scheduler.start()
    await settle()

    assert scheduler._task is timer
    assert scheduler.running
    assert gateway.calls["list_conversations"] == 1

    await scheduler.stop()
    await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_timer_polls_repeatedly(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection, poll_interval=0.01)

    await scheduler.start()
    await asyncio.sleep(0.06)
    await scheduler.stop()

    assert gateway.calls["list_conversations"] >= 2
    assert store.ids() == ["c1"]


@pytest.mark.asyncio
async def test_failed_tick_is_absorbed_and_recovered(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    gateway.fail_next("list_conversations", NetworkError("offline"))

    await scheduler.tick()

    assert isinstance(scheduler.last_error, NetworkError)
    assert scheduler.consecutive_failures == 1

    await scheduler.tick()

    assert scheduler.last_error is None
    assert scheduler.consecutive_failures == 0
    assert store.ids() == ["c1"]


@pytest.mark.asyncio
async def test_on_demand_refresh_surfaces_errors(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    gateway.fail_next("list_conversations", NetworkError("offline"))

    with pytest.raises(NetworkError) as excinfo:
        await scheduler.refresh_conversations()

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_pagination_loads_newest_page_then_older_history(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    _seed_history(gateway, 25)
    scheduler = _scheduler(gateway, store, windows, selection, page_size=20)
    await scheduler.refresh_conversations()

    snapshot = await scheduler.refresh_window("c1")

    assert len(snapshot.messages) == 20
    assert snapshot.has_more is True
    assert snapshot.messages[0].body == "message 5"

    added = await scheduler.load_older("c1")

    window = windows.get("c1")
    assert added == 5
    assert len(window) == 25
    assert window.has_more is False
    assert [m.body for m in window.messages] == [f"message {i}" for i in range(25)]
    assert await scheduler.load_older("c1") == 0


@pytest.mark.asyncio
async def test_older_page_overlapping_the_boundary_is_not_duplicated(
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    newest = [make_message(f"m{i}", i) for i in range(40, 20, -1)]
    older = [make_message(f"m{i}", i) for i in range(21, 1, -1)]
    gateway = PagedGateway(
        {
            None: MessagePage(messages=newest, next_cursor="m21", has_more=True),
            "m21": MessagePage(messages=older, next_cursor="m2", has_more=True),
        }
    )
    scheduler = _scheduler(gateway, store, windows, selection, page_size=20)

    await scheduler.refresh_window("c1")
    added = await scheduler.load_older("c1")

    window = windows.get("c1")
    assert added == 19
    assert len(window) == 39
    assert [m.id for m in window.messages].count("m21") == 1
    assert window.cursor == "m2"


@pytest.mark.asyncio
async def test_concurrent_load_older_calls_share_one_request(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    _seed_history(gateway, 30)
    scheduler = _scheduler(gateway, store, windows, selection, page_size=10)
    await scheduler.refresh_window("c1")
    before = gateway.calls["list_messages"]
    gateway.block("list_messages")

    first = asyncio.create_task(scheduler.load_older("c1"))
    second = asyncio.create_task(scheduler.load_older("c1"))
    await settle()
    assert windows.get("c1").is_loading is True
    gateway.release("list_messages")

    assert await asyncio.gather(first, second) == [10, 10]
    assert gateway.calls["list_messages"] == before + 1
    assert windows.get("c1").is_loading is False


@pytest.mark.asyncio
async def test_stale_window_response_is_discarded_after_switching(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    _seed_history(gateway, 3)
    scheduler = _scheduler(gateway, store, windows, selection)
    selection.select("c1")
    gateway.block("list_messages")

    load = asyncio.create_task(scheduler.refresh_window("c1"))
    await settle()
    selection.select("c2")
    gateway.release("list_messages")

    assert await load is None
    assert len(windows.get("c1")) == 0
    assert windows.get("c1").loaded is False


@pytest.mark.asyncio
async def test_open_conversation_serves_fresh_cache(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    _seed_history(gateway, 3)
    clock = FakeClock()
    scheduler = _scheduler(
        gateway, store, windows, selection, freshness_threshold=30, time_source=clock
    )

    await scheduler.open_conversation("c1")
    clock.advance(10)
    await scheduler.open_conversation("c1")
    assert gateway.calls["list_messages"] == 1

    clock.advance(25)
    await scheduler.open_conversation("c1")
    assert gateway.calls["list_messages"] == 2


@pytest.mark.asyncio
async def test_register_activity_refreshes_active_window(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    selection.select("c1")
    await scheduler.refresh_window("c1")
    gateway.queue_incoming("c1", "new one")

    snapshot = await scheduler.register_activity()

    assert [m.body for m in snapshot.messages] == ["new one"]


@pytest.mark.asyncio
async def test_deleted_conversation_is_dropped_everywhere(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    removed: list[str] = []
    scheduler = _scheduler(
        gateway, store, windows, selection, on_conversation_removed=removed.append
    )
    await scheduler.refresh_conversations()
    selection.select("c1")
    await scheduler.refresh_window("c1")
    gateway.remove_conversation("c1")

    with pytest.raises(NotFoundError):
        await scheduler.refresh_window("c1")

    assert "c1" not in store
    assert "c1" not in windows
    assert selection.conversation_id is None
    assert removed == ["c1"]


@pytest.mark.asyncio
async def test_conversation_missing_from_full_list_is_dropped(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    gateway.add_conversation("c2", ["me", "carol"], last_activity_at=at(5))
    scheduler = _scheduler(gateway, store, windows, selection)
    await scheduler.refresh_conversations()
    await scheduler.refresh_window("c2")
    selection.select("c2")
    gateway.remove_conversation("c2")

    await scheduler.refresh_conversations()

    assert store.ids() == ["c1"]
    assert "c2" not in windows
    assert selection.conversation_id is None


@pytest.mark.asyncio
async def test_older_page_from_before_a_gap_reset_is_discarded(
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    gateway = PagedGateway(
        {
            None: MessagePage(
                messages=[make_message("m10", 10), make_message("m9", 9)],
                next_cursor="m9",
                has_more=True,
            ),
            "m9": MessagePage(
                messages=[make_message("m8", 8), make_message("m7", 7)],
                next_cursor="m7",
                has_more=True,
            ),
        }
    )
    scheduler = _scheduler(gateway, store, windows, selection)
    await scheduler.refresh_window("c1")
    gateway.gates["m9"] = asyncio.Event()

    older = asyncio.create_task(scheduler.load_older("c1"))
    await settle()
    gateway.pages[None] = MessagePage(
        messages=[make_message("m52", 52), make_message("m51", 51)],
        next_cursor="m51",
        has_more=True,
    )
    await scheduler.refresh_window("c1")
    gateway.gates["m9"].set()

    assert await older == 0
    window = windows.get("c1")
    assert [m.id for m in window.messages] == ["m51", "m52"]
    assert window.cursor == "m51"
    assert window.has_more is True


@pytest.mark.asyncio
async def test_recreated_window_is_not_left_loading_by_an_old_request(
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    gateway = PagedGateway(
        {
            None: MessagePage(
                messages=[make_message("m10", 10), make_message("m9", 9)],
                next_cursor="m9",
                has_more=True,
            ),
            "m9": MessagePage(messages=[make_message("m8", 8)], has_more=False),
        }
    )
    scheduler = _scheduler(gateway, store, windows, selection)
    await scheduler.refresh_window("c1")
    gateway.gates["m9"] = asyncio.Event()
    older = asyncio.create_task(scheduler.load_older("c1"))
    await settle()

    scheduler.forget_conversation("c1")
    await scheduler.refresh_window("c1")

    assert windows.get("c1").is_loading is False

    gateway.gates["m9"].set()
    assert await older == 0
    window = windows.get("c1")
    assert window.is_loading is False
    assert [m.id for m in window.messages] == ["m9", "m10"]


@pytest.mark.asyncio
async def test_tick_is_skipped_while_previous_tick_is_running(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection)
    selection.select("c1")
    windows.get_or_create("c1")
    gateway.block("list_messages")

    scheduler._fire_tick()
    await settle()
    assert scheduler._list_task.done()

    scheduler._fire_tick()

    assert scheduler.skipped_ticks == 1
    assert gateway.calls["list_conversations"] == 1
    gateway.release("list_messages")
    await scheduler._tick_task
    assert gateway.calls["list_messages"] == 1


@pytest.mark.asyncio
async def test_on_demand_refresh_keeps_the_timer_phase(
    gateway: InMemoryChatGateway,
    store: ConversationStore,
    windows: WindowCache,
    selection: ActiveSelection,
) -> None:
    scheduler = _scheduler(gateway, store, windows, selection, poll_interval=0.2)

    await scheduler.start(immediate=False)
    try:
        await asyncio.sleep(0.1)
        await scheduler.refresh_conversations()
        assert gateway.calls["list_conversations"] == 1

        # The timer still fires 0.2s after start, not 0.2s after the refresh.
        await asyncio.sleep(0.17)
        assert gateway.calls["list_conversations"] == 2
        assert scheduler.skipped_ticks == 0
    finally:
        await scheduler.stop()
