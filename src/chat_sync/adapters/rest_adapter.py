from __future__ import annotations

import logging
from typing import Any, Iterable, Literal, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from chat_sync.errors import ChatSyncError, NetworkError, NotFoundError, ValidationError
from chat_sync.models.conversation import ConversationSummary
from chat_sync.models.message import Attachment, Message, MessagePage

logger = logging.getLogger(__name__)

_NOT_FOUND_STATUSES = {403, 404, 410}
_INVALID_STATUSES = {400, 422}


class ChatRESTGateway:
    """
    Gateway speaking the marketplace chat JSON API over HTTP.

    ``api_prefix`` selects the buyer/supplier API (``/api/chat``) or the admin
    one (``/api/admin/chat``). Message history may be served either as a
    ``{messages, nextCursor, hasMore}`` envelope or, with
    ``pagination="offset"``, as a bare newest-first list paged by offset.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        *,
        api_prefix: str = "/api/chat",
        pagination: Literal["cursor", "offset"] = "cursor",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Chat API base URL must be provided")
        if pagination not in {"cursor", "offset"}:
            raise ValueError("pagination must be 'cursor' or 'offset'")

        self._base_url = base_url.rstrip("/")
        self._prefix = "/" + api_prefix.strip("/")
        self._pagination = pagination
        self._timeout = timeout
        self._transport = transport
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"

    async def list_conversations(
        self, filter: Optional[str] = None
    ) -> list[ConversationSummary]:
        params = {"role": filter} if filter else None
        payload = await self._request("GET", "/conversations", params=params)
        if isinstance(payload, dict):
            payload = payload.get("conversations", payload.get("data", []))
        if not isinstance(payload, list):
            raise NetworkError(
                "Unexpected conversation list payload", payload={"body": payload}
            )
        return [self._parse(ConversationSummary, item) for item in payload]

    async def list_messages(
        self, conversation_id: str, cursor: Optional[str], limit: int
    ) -> MessagePage:
        params: dict[str, Any] = {"conversationId": conversation_id, "limit": limit}
        if cursor is not None:
            params["offset" if self._pagination == "offset" else "cursor"] = cursor

        payload = await self._request(
            "GET", "/messages", params=params, conversation_id=conversation_id
        )
        if isinstance(payload, list):
            messages = [self._parse(Message, item) for item in payload]
            offset = int(cursor or 0) + len(messages)
            has_more = len(messages) >= limit
            return MessagePage(
                messages=messages,
                next_cursor=str(offset) if has_more else None,
                has_more=has_more,
            )
        return self._parse(MessagePage, payload)

    async def send_message(
        self,
        conversation_id: str,
        body: str,
        attachment: Optional[Attachment] = None,
        *,
        client_message_id: Optional[str] = None,
    ) -> Message:
        if not conversation_id:
            raise ValidationError("conversation_id must be provided")
        if not (body or "").strip() and attachment is None:
            raise ValidationError("content cannot be empty")

        request_body: dict[str, Any] = {
            "conversationId": conversation_id,
            "message": body,
            "text": body,
        }
        if client_message_id is not None:
            request_body["clientMessageId"] = client_message_id
        if attachment is not None:
            request_body.update(
                {
                    "attachmentData": attachment.data,
                    "attachmentType": attachment.type,
                    "attachmentName": attachment.name,
                    "attachmentSize": attachment.size,
                }
            )

        payload = await self._request(
            "POST", "/messages", json=request_body, conversation_id=conversation_id
        )
        message = self._parse(Message, payload)
        logger.info(
            "Chat message dispatched conversation_id=%s message_id=%s",
            conversation_id,
            message.id,
        )
        return message

    async def mark_messages_read(self, message_ids: Iterable[str]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        await self._request("POST", "/messages/read", json={"messageIds": ids})

    async def create_conversation(
        self, participant_ids: Iterable[str], subject: Optional[str] = None
    ) -> ConversationSummary:
        request_body: dict[str, Any] = {"participantIds": list(participant_ids)}
        if subject:
            request_body["subject"] = subject
        payload = await self._request("POST", "/conversations", json=request_body)
        return self._parse(ConversationSummary, payload)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request(
            "DELETE",
            f"/conversations/{conversation_id}",
            conversation_id=conversation_id,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        conversation_id: Optional[str] = None,
    ) -> Any:
        endpoint = f"{self._prefix}{path}"
        logger.debug("Dispatching %s %s params=%s", method, endpoint, params)

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.request(method, endpoint, params=params, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Chat API %s %s timed out", method, endpoint)
            raise NetworkError(
                "Chat API request timed out",
                payload=self._failure_payload(method, endpoint, error="timeout"),
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Chat API %s %s failed: %s", method, endpoint, exc)
            raise NetworkError(
                "Chat API request failed",
                payload=self._failure_payload(method, endpoint, error=str(exc)),
            ) from exc

        if not response.is_success:
            raise self._status_error(method, endpoint, response, conversation_id)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            logger.error("Chat API returned invalid JSON for %s %s", method, endpoint)
            raise NetworkError(
                "Invalid chat API response",
                payload=self._failure_payload(
                    method,
                    endpoint,
                    status_code=response.status_code,
                    body=response.text,
                ),
            ) from exc

    def _status_error(
        self,
        method: str,
        endpoint: str,
        response: httpx.Response,
        conversation_id: Optional[str],
    ) -> ChatSyncError:
        status = response.status_code
        payload = self._failure_payload(
            method, endpoint, status_code=status, body=response.text
        )
        logger.error(
            "Chat API %s %s failed with status=%s body=%s",
            method,
            endpoint,
            status,
            response.text,
        )
        if status in _NOT_FOUND_STATUSES:
            return NotFoundError(
                "Conversation not found", conversation_id=conversation_id, payload=payload
            )
        if status in _INVALID_STATUSES:
            return ValidationError("Chat API rejected the request", payload=payload)
        if status == 401:
            return NetworkError("Chat API session rejected", payload=payload, retryable=False)
        return NetworkError("Chat API request failed", payload=payload)

    @staticmethod
    def _parse(model: Any, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise NetworkError(
                f"Malformed {model.__name__} in chat API response",
                payload={"body": data, "error": str(exc)},
            ) from exc

    @staticmethod
    def _failure_payload(
        method: str,
        endpoint: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "failed",
            "method": method,
            "endpoint": endpoint,
        }
        if status_code is not None:
            payload["status_code"] = status_code
        if body is not None:
            payload["body"] = body
        if error is not None:
            payload["error"] = error
        return payload


__all__ = ["ChatRESTGateway"]
