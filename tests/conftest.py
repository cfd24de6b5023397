"""Shared fixtures for the chat-sync test-suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_sync.adapters.memory_adapter import InMemoryChatGateway  # noqa: E402
from chat_sync.state.conversation_store import ConversationStore  # noqa: E402
from chat_sync.state.message_window import WindowCache  # noqa: E402
from chat_sync.state.selection import ActiveSelection  # noqa: E402

from helpers import at  # noqa: E402


@pytest.fixture(autouse=True)
def clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests never pick up a developer's CHAT_SYNC_* variables."""

    for key in (
        "CHAT_SYNC_ENV",
        "CHAT_SYNC_BASE_URL",
        "CHAT_SYNC_API_TOKEN",
        "CHAT_SYNC_API_PREFIX",
        "CHAT_SYNC_PAGINATION",
        "CHAT_SYNC_POLL_INTERVAL",
        "CHAT_SYNC_PAGE_SIZE",
        "CHAT_SYNC_FRESHNESS_SECONDS",
        "CHAT_SYNC_MAX_CACHED_WINDOWS",
        "CHAT_SYNC_MAX_BODY_LENGTH",
        "CHAT_SYNC_MAX_ATTACHMENT_BYTES",
        "CHAT_SYNC_AUTO_MARK_READ",
        "CHAT_SYNC_REQUEST_TIMEOUT",
        "CHAT_SYNC_VIEWER_ID",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def gateway() -> InMemoryChatGateway:
    gw = InMemoryChatGateway(viewer_id="me")
    gw.add_conversation("c1", ["me", "bob"], subject="Order 1", last_activity_at=at(0))
    return gw


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore()


@pytest.fixture
def windows() -> WindowCache:
    return WindowCache(max_windows=5)


@pytest.fixture
def selection() -> ActiveSelection:
    return ActiveSelection()

