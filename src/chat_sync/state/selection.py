from __future__ import annotations

from typing import Optional


class ActiveSelection:
    """
    The conversation currently open in the UI, if any.

    ``sequence`` increases on every change and keys the stale-response guard:
    a window load started under one sequence is only applied while the same
    conversation is still selected under that sequence.
    """

    def __init__(self) -> None:
        self.conversation_id: Optional[str] = None
        self.sequence = 0

    def select(self, conversation_id: Optional[str]) -> int:
        if conversation_id != self.conversation_id:
            self.conversation_id = conversation_id
            self.sequence += 1
        return self.sequence

    def clear(self) -> int:
        return self.select(None)

    def is_current(self, conversation_id: str, sequence: int) -> bool:
        return self.conversation_id == conversation_id and self.sequence == sequence

    def __repr__(self) -> str:
        return (
            "ActiveSelection("
            f"conversation_id={self.conversation_id!r}, sequence={self.sequence!r}"
            ")"
        )


__all__ = ["ActiveSelection"]
