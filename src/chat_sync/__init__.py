"""Client-side conversation synchronisation engine for marketplace chat."""

from chat_sync.config import SyncSettings, load_settings
from chat_sync.engine import ChatSyncEngine
from chat_sync.errors import ChatSyncError, NetworkError, NotFoundError, ValidationError
from chat_sync.models import (
    Attachment,
    ClientState,
    ConversationSummary,
    Message,
    MessagePage,
    Participant,
    ParticipantRole,
    SendState,
)
from chat_sync.outcome import Outcome
from chat_sync.services.filter_index import FilterMode

__version__ = "0.1.0"

__all__ = [
    "Attachment",
    "ChatSyncEngine",
    "ChatSyncError",
    "ClientState",
    "ConversationSummary",
    "FilterMode",
    "Message",
    "MessagePage",
    "NetworkError",
    "NotFoundError",
    "Outcome",
    "Participant",
    "ParticipantRole",
    "SendState",
    "SyncSettings",
    "ValidationError",
    "load_settings",
]
