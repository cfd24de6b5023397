from .conversation_store import ConversationStore
from .message_window import MessageWindow, WindowCache, WindowSnapshot
from .selection import ActiveSelection

__all__ = [
    "ActiveSelection",
    "ConversationStore",
    "MessageWindow",
    "WindowCache",
    "WindowSnapshot",
]
