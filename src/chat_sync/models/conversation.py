from __future__ import annotations

from enum import StrEnum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ._types import UtcDatetime


class ParticipantRole(StrEnum):
    BUYER = "buyer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


class Participant(BaseModel):
    """Display detail for one member of a conversation."""

    id: str
    name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    company_name: Optional[str] = None
    unread_count: int = Field(default=0, ge=0)

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("role", mode="before")
    @classmethod
    def _normalise_role(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    def search_terms(self) -> list[str]:
        return [
            term
            for term in (self.name, self.username, self.email, self.company_name)
            if term
        ]


class ConversationSummary(BaseModel):
    """
    Locally cached summary of one conversation as listed by the remote store.
    """

    id: str
    participant_ids: frozenset[str]
    subject: Optional[str] = None
    last_message_preview: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "lastMessagePreview", "lastMessageText", "last_message_preview"
        ),
    )
    last_activity_at: UtcDatetime
    unread_count: int = Field(default=0, ge=0)
    participant_role: Optional[str] = None
    participants: tuple[Participant, ...] = Field(
        default=(),
        validation_alias=AliasChoices("participants", "_participants"),
    )

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    @field_validator("participant_ids")
    @classmethod
    def _require_two_participants(cls, value: frozenset[str]) -> frozenset[str]:
        if len(value) < 2:
            raise ValueError("a conversation needs at least two participants")
        return value

    @field_validator("participant_role", mode="before")
    @classmethod
    def _normalise_role(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @field_validator("unread_count", mode="before")
    @classmethod
    def _null_unread_is_zero(cls, value: object) -> object:
        return 0 if value is None else value

    def counterparts(self, viewer_id: str | None) -> List[Participant]:
        """Participants other than ``viewer_id`` (all of them when unknown)."""

        return [p for p in self.participants if p.id != viewer_id]


__all__ = ["ConversationSummary", "Participant", "ParticipantRole"]
