from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ._types import UtcDatetime


class ClientState(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class SendState(StrEnum):
    COMPOSING = "composing"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Attachment(BaseModel):
    """File attached to an outgoing message (base64 data or storage reference)."""

    data: str
    type: str
    name: str
    size: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)


class Message(BaseModel):
    """
    A chat message as held in a message window.

    ``pending`` and ``failed`` messages only exist for local sends that the
    server has not acknowledged yet; their ``id`` is the correlation id.
    """

    id: str
    conversation_id: str
    sender_id: str
    body: str = Field(
        default="",
        validation_alias=AliasChoices("body", "message", "text"),
    )
    attachment_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "attachmentRef", "attachmentUrl", "attachment_ref"
        ),
    )
    created_at: UtcDatetime
    is_read: bool = False
    client_state: ClientState = ClientState.CONFIRMED
    correlation_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "correlationId", "clientMessageId", "correlation_id"
        ),
    )

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("body", mode="before")
    @classmethod
    def _null_body_is_empty(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def is_local(self) -> bool:
        return self.client_state is not ClientState.CONFIRMED


class MessagePage(BaseModel):
    """One page of ``list_messages`` results, newest first as sent on the wire."""

    messages: List[Message] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


__all__ = ["Attachment", "ClientState", "Message", "MessagePage", "SendState"]
