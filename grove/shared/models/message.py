"""Stored conversation message model."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """One immutable row of a session's history.

    ``id`` is the store's auto-increment id and breaks timestamp ties.
    ``has_branches`` counts branches forked at this message.
    """
    id: int
    session_id: str
    role: MessageRole
    content: str
    timestamp: str
    has_branches: int = 0

    def to_api(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}
