"""Adapters package - canonical event vocabulary shared by providers,
the conversation service and the HTTP server.
"""
from __future__ import annotations

__all__ = [
    "CancelledEvent",
    "DoneEvent",
    "ErrorEvent",
    "ErrorKind",
    "ProviderEvent",
    "TextEvent",
    "TokenUsage",
    "ToolEndEvent",
    "ToolStartEvent",
]

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    ProviderEvent,
    TextEvent,
    TokenUsage,
    ToolEndEvent,
    ToolStartEvent,
)
