"""Heuristic context-window pressure for backends that hide token counts.

The CLI keeps its own context and never reports how full it is, so the
fill level is estimated from grove's side of the conversation: stored
message characters, tool calls and turns, on top of a fixed system
prompt allowance.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable

from grove.shared.models.message import Message, MessageRole

MAX_CONTEXT_TOKENS = 200_000
SYSTEM_PROMPT_TOKENS = 8_000
TOOL_OVERHEAD_TOKENS = 500
TURN_OVERHEAD_TOKENS = 2_000
CHARS_PER_TOKEN = 3.5
TOKEN_FUDGE = 1.15


class PressureLevel(str, enum.Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def should_rotate(self) -> bool:
        return self in (PressureLevel.HIGH, PressureLevel.CRITICAL)


@dataclass(frozen=True)
class PressureEstimate:
    tokens: int
    level: PressureLevel

    @property
    def ratio(self) -> float:
        return usage_ratio(self.tokens)


def usage_ratio(tokens: int) -> float:
    """Fraction of the context window in use; may exceed 1.0."""
    return tokens / MAX_CONTEXT_TOKENS


def level_for(tokens: int) -> PressureLevel:
    ratio = usage_ratio(tokens)
    if ratio < 0.5:
        return PressureLevel.LOW
    if ratio < 0.75:
        return PressureLevel.MODERATE
    if ratio < 0.9:
        return PressureLevel.HIGH
    return PressureLevel.CRITICAL


def _total(total_chars: int, tool_event_count: int, turn_count: int) -> PressureEstimate:
    tokens = (
        SYSTEM_PROMPT_TOKENS
        + int(total_chars / CHARS_PER_TOKEN * TOKEN_FUDGE)
        + tool_event_count * TOOL_OVERHEAD_TOKENS
        + turn_count * TURN_OVERHEAD_TOKENS
    )
    return PressureEstimate(tokens, level_for(tokens))


def estimate_pressure(
    messages: Iterable[Message], tool_event_count: int = 0,
) -> PressureEstimate:
    """Estimate from a session's stored messages and its tool call count."""
    total_chars = 0
    turns = 0
    for message in messages:
        total_chars += len(message.content)
        if message.role == MessageRole.USER:
            turns += 1
    return _total(total_chars, tool_event_count, turns)
