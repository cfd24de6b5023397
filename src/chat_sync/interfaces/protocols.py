from __future__ import annotations

from typing import Iterable, Optional, Protocol, runtime_checkable

from chat_sync.models.conversation import ConversationSummary
from chat_sync.models.message import Attachment, Message, MessagePage


@runtime_checkable
class ConversationGateway(Protocol):
    async def list_conversations(
        self, filter: Optional[str] = None
    ) -> list[ConversationSummary]:
        ...

    async def list_messages(
        self, conversation_id: str, cursor: Optional[str], limit: int
    ) -> MessagePage:
        ...

    async def send_message(
        self,
        conversation_id: str,
        body: str,
        attachment: Optional[Attachment] = None,
        *,
        client_message_id: Optional[str] = None,
    ) -> Message:
        ...

    async def mark_messages_read(self, message_ids: Iterable[str]) -> None:
        ...

    async def create_conversation(
        self, participant_ids: Iterable[str], subject: Optional[str] = None
    ) -> ConversationSummary:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...


__all__ = ["ConversationGateway"]
