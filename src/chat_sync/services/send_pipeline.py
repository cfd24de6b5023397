from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from chat_sync.errors import ChatSyncError, NetworkError, NotFoundError, ValidationError
from chat_sync.interfaces.protocols import ConversationGateway
from chat_sync.models._types import utcnow
from chat_sync.models.message import Attachment, ClientState, Message, SendState
from chat_sync.state.conversation_store import ConversationStore
from chat_sync.state.message_window import WindowCache

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


def new_correlation_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


@dataclass(frozen=True)
class OutgoingMessage:
    correlation_id: str
    conversation_id: str
    body: str
    attachment: Optional[Attachment]
    created_at: datetime
    state: SendState = SendState.COMPOSING
    error: Optional[ChatSyncError] = None
    server_id: Optional[str] = None


class SendPipeline:
    """
    Optimistic sends reconciled by correlation id.

    ``composing -> pending -> confirmed | failed``. A pending message is shown
    in the window before the remote call is made; the server answer replaces
    it by correlation id whatever order confirmations arrive in. Failed sends
    stay in the window until the user retries or discards them. Nothing is
    retried automatically.
    """

    def __init__(
        self,
        gateway: ConversationGateway,
        store: ConversationStore,
        windows: WindowCache,
        *,
        sender_id: str,
        max_body_length: int = 4000,
        max_attachment_bytes: int = 5 * 1024 * 1024,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._windows = windows
        self._sender_id = sender_id
        self._max_body_length = max_body_length
        self._max_attachment_bytes = max_attachment_bytes
        self._clock = clock
        self._outbox: dict[str, OutgoingMessage] = {}
        self._last_local_at: dict[str, datetime] = {}

    def get(self, correlation_id: str) -> Optional[OutgoingMessage]:
        return self._outbox.get(correlation_id)

    def failed(self, conversation_id: Optional[str] = None) -> list[OutgoingMessage]:
        return [
            outgoing
            for outgoing in list(self._outbox.values())
            if outgoing.state is SendState.FAILED
            and (conversation_id is None or outgoing.conversation_id == conversation_id)
            and self._reconciled(outgoing) is None
        ]

    async def submit(
        self,
        conversation_id: str,
        body: str,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        if conversation_id not in self._store:
            raise NotFoundError(
                "Conversation not found when sending message",
                conversation_id=conversation_id,
            )

        outgoing = OutgoingMessage(
            correlation_id=new_correlation_id(),
            conversation_id=conversation_id,
            body=body,
            attachment=attachment,
            created_at=self._local_timestamp(conversation_id),
        )
        window = self._windows.get_or_create(conversation_id)

        try:
            self._validate(body, attachment)
        except ValidationError as exc:
            failed = replace(outgoing, state=SendState.FAILED, error=exc)
            self._outbox[failed.correlation_id] = failed
            window.append(self._optimistic(failed, ClientState.FAILED))
            logger.info(
                "Rejected outgoing message correlation_id=%s: %s",
                failed.correlation_id,
                exc,
            )
            raise

        pending = replace(outgoing, state=SendState.PENDING)
        self._outbox[pending.correlation_id] = pending
        window.append(self._optimistic(pending, ClientState.PENDING))
        return await self._dispatch(pending)

    async def retry(self, correlation_id: str) -> Message:
        """Resend a failed message under its original correlation id."""

        outgoing = self._outbox.get(correlation_id)
        if outgoing is None:
            raise ValidationError(f"No outgoing message with correlation id {correlation_id}")
        if outgoing.state is not SendState.FAILED:
            raise ValidationError(
                f"Outgoing message {correlation_id} is {outgoing.state.value}, not failed"
            )
        confirmed = self._reconciled(outgoing)
        if confirmed is not None:
            return confirmed
        if outgoing.conversation_id not in self._store:
            raise NotFoundError(
                "Conversation not found when retrying message",
                conversation_id=outgoing.conversation_id,
            )
        self._validate(outgoing.body, outgoing.attachment)

        pending = replace(outgoing, state=SendState.PENDING, error=None)
        self._outbox[correlation_id] = pending
        window = self._windows.get_or_create(pending.conversation_id)
        if window.mark_pending(correlation_id) is None:
            window.append(self._optimistic(pending, ClientState.PENDING))
        logger.info("Retrying outgoing message correlation_id=%s", correlation_id)
        return await self._dispatch(pending)

    def discard(self, correlation_id: str) -> bool:
        outgoing = self._outbox.get(correlation_id)
        if outgoing is None or outgoing.state is not SendState.FAILED:
            return False
        del self._outbox[correlation_id]
        window = self._windows.get(outgoing.conversation_id)
        if window is not None:
            window.discard(correlation_id)
        return True

    def forget_conversation(self, conversation_id: str) -> None:
        for correlation_id, outgoing in list(self._outbox.items()):
            if outgoing.conversation_id == conversation_id:
                del self._outbox[correlation_id]
        self._last_local_at.pop(conversation_id, None)

    async def _dispatch(self, outgoing: OutgoingMessage) -> Message:
        correlation_id = outgoing.correlation_id
        try:
            confirmed = await self._gateway.send_message(
                outgoing.conversation_id,
                outgoing.body,
                outgoing.attachment,
                client_message_id=correlation_id,
            )
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, ChatSyncError)
                else NetworkError(
                    "Message delivery failed",
                    payload={"correlation_id": correlation_id, "error": str(exc)},
                )
            )
            self._fail(outgoing, error)
            if error is exc:
                raise
            raise error from exc

        window = self._windows.get(outgoing.conversation_id)
        reconciled = (
            window.replace_pending(correlation_id, confirmed)
            if window is not None
            else confirmed
        )
        if correlation_id in self._outbox:
            del self._outbox[correlation_id]
        self._store.apply_local_activity(
            outgoing.conversation_id,
            reconciled.created_at,
            preview=_preview(outgoing),
        )
        logger.info(
            "Message confirmed conversation_id=%s correlation_id=%s message_id=%s",
            outgoing.conversation_id,
            correlation_id,
            reconciled.id,
        )
        return reconciled

    def _reconciled(self, outgoing: OutgoingMessage) -> Optional[Message]:
        """
        Return the confirmed message a poll already matched to ``outgoing``.

        A send can fail on our side after the server stored it; the next poll
        then echoes the correlation id and the window confirms the entry. The
        outbox entry is dropped so the message is neither listed as failed nor
        sent again.
        """

        window = self._windows.get(outgoing.conversation_id)
        if window is None:
            return None
        confirmed = window.confirmed_for(outgoing.correlation_id)
        if confirmed is None:
            return None
        self._outbox.pop(outgoing.correlation_id, None)
        logger.info(
            "Failed send already confirmed by the server correlation_id=%s message_id=%s",
            outgoing.correlation_id,
            confirmed.id,
        )
        return confirmed

    def _fail(self, outgoing: OutgoingMessage, error: ChatSyncError) -> None:
        correlation_id = outgoing.correlation_id
        if correlation_id in self._outbox:
            self._outbox[correlation_id] = replace(
                outgoing, state=SendState.FAILED, error=error
            )
        window = self._windows.get(outgoing.conversation_id)
        if window is not None:
            window.mark_failed(correlation_id)
        logger.warning(
            "Message delivery failed conversation_id=%s correlation_id=%s: %s",
            outgoing.conversation_id,
            correlation_id,
            error,
        )

    def _validate(self, body: str, attachment: Optional[Attachment]) -> None:
        if not (body or "").strip() and attachment is None:
            raise ValidationError("Message body cannot be empty")
        if len(body or "") > self._max_body_length:
            raise ValidationError(
                f"Message body exceeds {self._max_body_length} characters",
                payload={"length": len(body)},
            )
        if attachment is not None and attachment.size > self._max_attachment_bytes:
            raise ValidationError(
                f"Attachment exceeds {self._max_attachment_bytes} bytes",
                payload={"name": attachment.name, "size": attachment.size},
            )

    def _optimistic(self, outgoing: OutgoingMessage, state: ClientState) -> Message:
        return Message(
            id=outgoing.correlation_id,
            conversation_id=outgoing.conversation_id,
            sender_id=self._sender_id,
            body=outgoing.body or "",
            attachment_ref=outgoing.attachment.name if outgoing.attachment else None,
            created_at=outgoing.created_at,
            is_read=True,
            client_state=state,
            correlation_id=outgoing.correlation_id,
        )

    def _local_timestamp(self, conversation_id: str) -> datetime:
        # Strictly increasing per conversation so pending entries keep submission order.
        now = self._clock()
        last = self._last_local_at.get(conversation_id)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self._last_local_at[conversation_id] = now
        return now


def _preview(outgoing: OutgoingMessage) -> str:
    if outgoing.body and outgoing.body.strip():
        return outgoing.body.strip()
    return outgoing.attachment.name if outgoing.attachment else ""


__all__ = ["LOCAL_ID_PREFIX", "OutgoingMessage", "SendPipeline", "new_correlation_id"]
