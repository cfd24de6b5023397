from .conversation import ConversationSummary, Participant, ParticipantRole
from .message import Attachment, ClientState, Message, MessagePage, SendState

__all__ = [
    "Attachment",
    "ClientState",
    "ConversationSummary",
    "Message",
    "MessagePage",
    "Participant",
    "ParticipantRole",
    "SendState",
]
