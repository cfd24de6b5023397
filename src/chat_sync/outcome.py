from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from chat_sync.errors import ChatSyncError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an engine command: a value or a typed failure, never both."""

    value: T | None = None
    error: ChatSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T | None:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: T | None = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatSyncError) -> "Outcome[T]":
        return cls(error=error)


__all__ = ["Outcome"]
