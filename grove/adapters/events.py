"""Canonical events emitted by every provider adapter.

Each adapter normalizes its backend protocol into this vocabulary. A
stream ends with exactly one terminal event: DoneEvent, ErrorEvent or
CancelledEvent.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    AUTHORIZATION = "authorization"
    DOMAIN = "domain"
    RESOURCE = "resource"
    TIMEOUT = "timeout"
    SERVER = "server"


@dataclass
class TokenUsage:
    """Cumulative usage for a turn or a session."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_usd: float | None = None
    num_turns: int | None = None

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens
        if other.cost_usd is not None:
            self.cost_usd = (self.cost_usd or 0.0) + other.cost_usd
        if other.num_turns is not None:
            self.num_turns = (self.num_turns or 0) + other.num_turns

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        data = data or {}
        valid = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in valid})


@dataclass
class ProviderEvent:
    """Base canonical event."""
    event_type: str = ""

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass
class TextEvent(ProviderEvent):
    event_type: str = "text"
    text: str = ""


@dataclass
class ToolStartEvent(ProviderEvent):
    event_type: str = "tool_start"
    name: str = ""
    input: str = "{}"
    tool_use_id: str | None = None


@dataclass
class ToolEndEvent(ProviderEvent):
    event_type: str = "tool_end"
    name: str = ""
    result: str = ""
    is_error: bool = False
    tool_use_id: str | None = None


@dataclass
class DoneEvent(ProviderEvent):
    event_type: str = "done"
    usage: TokenUsage | None = None

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass
class ErrorEvent(ProviderEvent):
    event_type: str = "error"
    message: str = ""
    kind: ErrorKind = ErrorKind.TRANSPORT

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass
class CancelledEvent(ProviderEvent):
    event_type: str = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return True
