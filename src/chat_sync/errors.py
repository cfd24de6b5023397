from __future__ import annotations

from typing import Any


class ChatSyncError(RuntimeError):
    """Base error raised by gateways and engine components."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        payload: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.payload: dict[str, Any] = payload or {}
        if retryable is not None:
            self.retryable = retryable


class NetworkError(ChatSyncError):
    """Transient transport or server failure; the operation may be retried."""

    retryable = True


class NotFoundError(ChatSyncError):
    """The conversation no longer exists (or is no longer visible) server-side."""

    def __init__(
        self,
        message: str,
        *,
        conversation_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, payload=payload)
        self.conversation_id = conversation_id


class ValidationError(ChatSyncError):
    """Malformed request payload, rejected locally or by the server."""


__all__ = ["ChatSyncError", "NetworkError", "NotFoundError", "ValidationError"]
