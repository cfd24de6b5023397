from __future__ import annotations

import asyncio
import itertools
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from chat_sync.errors import ChatSyncError, NotFoundError, ValidationError
from chat_sync.models._types import utcnow
from chat_sync.models.conversation import ConversationSummary, Participant
from chat_sync.models.message import Attachment, Message, MessagePage

logger = logging.getLogger(__name__)


class InMemoryChatGateway:
    """
    Asynchronous in-process gateway that simulates the remote chat store.

    Used by the development environment and the test-suite. Every call can be
    delayed (``latency``), made to fail (``fail_next``) or held open until a
    test releases it (``block``/``release``), which is how concurrent and
    out-of-order responses are reproduced.
    """

    def __init__(
        self,
        *,
        viewer_id: str = "me",
        latency: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if latency < 0:
            raise ValueError("latency must not be negative")
        self.viewer_id = viewer_id
        self.latency = latency
        self._clock = clock
        self._id_sequence = itertools.count(1)
        self._conversations: dict[str, ConversationSummary] = {}
        self._messages: dict[str, list[Message]] = defaultdict(list)
        self._by_client_id: dict[str, Message] = {}
        self._outbound_history: list[Message] = []
        self._failures: dict[str, list[ChatSyncError]] = defaultdict(list)
        self._gates: dict[str, asyncio.Event] = {}
        self.calls: Counter[str] = Counter()

    # -- seeding helpers -------------------------------------------------

    def add_conversation(
        self,
        conversation_id: str,
        participant_ids: Iterable[str] = (),
        *,
        subject: Optional[str] = None,
        participant_role: Optional[str] = None,
        participants: Iterable[Participant] = (),
        unread_count: int = 0,
        last_activity_at: Optional[datetime] = None,
    ) -> ConversationSummary:
        participants = tuple(participants)
        ids = set(participant_ids) or {p.id for p in participants}
        ids.add(self.viewer_id)
        summary = ConversationSummary(
            id=conversation_id,
            participant_ids=frozenset(ids),
            subject=subject,
            last_activity_at=last_activity_at or self._clock(),
            unread_count=unread_count,
            participant_role=participant_role,
            participants=participants,
        )
        self._conversations[conversation_id] = summary
        return summary

    def queue_incoming(
        self,
        conversation_id: str,
        body: str,
        *,
        sender_id: str = "counterpart",
        created_at: Optional[datetime] = None,
    ) -> Message:
        """Store a message from another participant, as if delivered remotely."""

        summary = self._require(conversation_id)
        message = Message(
            id=self._next_message_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            body=body,
            created_at=created_at or self._next_timestamp(conversation_id),
        )
        self._messages[conversation_id].append(message)
        self._conversations[conversation_id] = summary.model_copy(
            update={
                "last_activity_at": max(summary.last_activity_at, message.created_at),
                "last_message_preview": body,
                "unread_count": summary.unread_count + 1,
            }
        )
        return message

    def remove_conversation(self, conversation_id: str) -> None:
        """Delete a conversation server-side without going through the API."""

        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)

    def messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    @property
    def outbound_history(self) -> list[Message]:
        return list(self._outbound_history)

    # -- call control ----------------------------------------------------

    def fail_next(self, operation: str, error: ChatSyncError) -> None:
        """Make the next call to ``operation`` raise ``error``."""

        self._failures[operation].append(error)

    def block(self, operation: str) -> asyncio.Event:
        """Hold calls to ``operation`` until :meth:`release` is called."""

        gate = self._gates.get(operation)
        if gate is None:
            gate = asyncio.Event()
            self._gates[operation] = gate
        return gate

    def release(self, operation: str) -> None:
        gate = self._gates.pop(operation, None)
        if gate is not None:
            gate.set()

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        await asyncio.sleep(self.latency)
        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()
        failures = self._failures.get(operation)
        if failures:
            error = failures.pop(0)
            logger.warning("In-memory gateway simulated failure operation=%s", operation)
            raise error

    # -- gateway operations ----------------------------------------------

    async def list_conversations(
        self, filter: Optional[str] = None
    ) -> list[ConversationSummary]:
        await self._enter("list_conversations")
        summaries = list(self._conversations.values())
        if filter:
            summaries = [s for s in summaries if s.participant_role == filter]
        return summaries

    async def list_messages(
        self, conversation_id: str, cursor: Optional[str], limit: int
    ) -> MessagePage:
        await self._enter("list_messages")
        self._require(conversation_id)
        if limit <= 0:
            raise ValidationError("limit must be positive")
        try:
            offset = int(cursor) if cursor is not None else 0
        except ValueError as exc:
            raise ValidationError(f"Invalid cursor {cursor!r}") from exc

        newest_first = sorted(
            self._messages[conversation_id], key=lambda m: m.sort_key, reverse=True
        )
        page = newest_first[offset : offset + limit]
        has_more = offset + len(page) < len(newest_first)
        logger.debug(
            "In-memory list_messages conversation_id=%s offset=%s returned=%s",
            conversation_id,
            offset,
            len(page),
        )
        return MessagePage(
            messages=page,
            next_cursor=str(offset + len(page)) if has_more else None,
            has_more=has_more,
        )

    async def send_message(
        self,
        conversation_id: str,
        body: str,
        attachment: Optional[Attachment] = None,
        *,
        client_message_id: Optional[str] = None,
    ) -> Message:
        await self._enter("send_message")
        summary = self._require(conversation_id)
        if not (body or "").strip() and attachment is None:
            raise ValidationError("content cannot be empty")

        if client_message_id is not None and client_message_id in self._by_client_id:
            # A resend of an already stored message.
            return self._by_client_id[client_message_id]

        message = Message(
            id=self._next_message_id(),
            conversation_id=conversation_id,
            sender_id=self.viewer_id,
            body=body or "",
            attachment_ref=attachment.name if attachment else None,
            created_at=self._next_timestamp(conversation_id),
            is_read=True,
            correlation_id=client_message_id,
        )
        self._messages[conversation_id].append(message)
        self._outbound_history.append(message)
        if client_message_id is not None:
            self._by_client_id[client_message_id] = message
        self._conversations[conversation_id] = summary.model_copy(
            update={
                "last_activity_at": max(summary.last_activity_at, message.created_at),
                "last_message_preview": message.body or message.attachment_ref,
            }
        )
        logger.info(
            "In-memory gateway stored conversation_id=%s message_id=%s",
            conversation_id,
            message.id,
        )
        return message

    async def mark_messages_read(self, message_ids: Iterable[str]) -> None:
        await self._enter("mark_messages_read")
        wanted = set(message_ids)
        for conversation_id, stored in self._messages.items():
            changed = False
            for index, message in enumerate(stored):
                if message.id in wanted and not message.is_read:
                    stored[index] = message.model_copy(update={"is_read": True})
                    changed = True
            if changed and conversation_id in self._conversations:
                unread = sum(
                    1
                    for m in stored
                    if not m.is_read and m.sender_id != self.viewer_id
                )
                self._conversations[conversation_id] = self._conversations[
                    conversation_id
                ].model_copy(update={"unread_count": unread})

    async def create_conversation(
        self, participant_ids: Iterable[str], subject: Optional[str] = None
    ) -> ConversationSummary:
        await self._enter("create_conversation")
        ids = set(participant_ids) | {self.viewer_id}
        if len(ids) < 2:
            raise ValidationError("a conversation needs at least two participants")
        conversation_id = f"conv-{next(self._id_sequence)}"
        return self.add_conversation(conversation_id, ids, subject=subject)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._enter("delete_conversation")
        self._require(conversation_id)
        self.remove_conversation(conversation_id)

    def _require(self, conversation_id: str) -> ConversationSummary:
        summary = self._conversations.get(conversation_id)
        if summary is None:
            raise NotFoundError(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return summary

    def _next_message_id(self) -> str:
        return f"msg-{next(self._id_sequence)}"

    def _next_timestamp(self, conversation_id: str) -> datetime:
        now = self._clock()
        stored = self._messages.get(conversation_id)
        if stored:
            latest = max(message.created_at for message in stored)
            if now <= latest:
                now = latest + timedelta(milliseconds=1)
        return now


__all__ = ["InMemoryChatGateway"]
