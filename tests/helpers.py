from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from chat_sync.models.conversation import ConversationSummary, Participant
from chat_sync.models.message import ClientState, Message

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(
    message_id: str,
    seconds: float,
    *,
    conversation_id: str = "c1",
    sender_id: str = "bob",
    body: Optional[str] = None,
    is_read: bool = False,
) -> Message:
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        body=body if body is not None else f"message {message_id}",
        created_at=at(seconds),
        is_read=is_read,
    )


def make_local(
    local_id: str,
    seconds: float,
    *,
    conversation_id: str = "c1",
    state: ClientState = ClientState.PENDING,
    body: str = "outgoing",
) -> Message:
    return Message(
        id=local_id,
        conversation_id=conversation_id,
        sender_id="me",
        body=body,
        created_at=at(seconds),
        is_read=True,
        client_state=state,
        correlation_id=local_id,
    )


def make_summary(
    conversation_id: str,
    seconds: float,
    *,
    role: Optional[str] = None,
    subject: Optional[str] = None,
    participant_ids: Iterable[str] = ("me", "bob"),
    participants: Iterable[Participant] = (),
    unread: int = 0,
    preview: Optional[str] = None,
) -> ConversationSummary:
    return ConversationSummary(
        id=conversation_id,
        participant_ids=frozenset(participant_ids),
        subject=subject,
        last_message_preview=preview,
        last_activity_at=at(seconds),
        unread_count=unread,
        participant_role=role,
        participants=tuple(participants),
    )


class FakeClock:
    """Manually advanced monotonic time source."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let every ready task run up to its next real suspension point."""

    for _ in range(rounds):
        await asyncio.sleep(0)
