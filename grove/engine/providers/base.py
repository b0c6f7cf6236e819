"""Abstract base for conversation providers.

Each provider wraps a different backend (the CLI subprocess, the direct
Messages API, a remote grove peer) and normalizes its protocol into the
canonical events in grove.adapters.events. ``send`` is an async
generator; closing it early stops the underlying process or HTTP read.
"""
from __future__ import annotations

import abc
import enum
import logging
import shutil
from dataclasses import dataclass, field
from typing import AsyncIterator

from grove.adapters.events import ProviderEvent

logger = logging.getLogger(__name__)


class ProviderCapability(enum.Flag):
    NONE = 0
    STREAMING = enum.auto()
    TOOL_EXECUTION = enum.auto()
    SESSION_RESUME = enum.auto()
    SESSION_FORK = enum.auto()
    PROMPT_CACHING = enum.auto()
    COST_TRACKING = enum.auto()
    MODEL_SELECTION = enum.auto()

    def names(self) -> list[str]:
        return [c.name.lower() for c in ProviderCapability if c and c in self]


ALL_CAPABILITIES = (
    ProviderCapability.STREAMING
    | ProviderCapability.TOOL_EXECUTION
    | ProviderCapability.SESSION_RESUME
    | ProviderCapability.SESSION_FORK
    | ProviderCapability.PROMPT_CACHING
    | ProviderCapability.COST_TRACKING
    | ProviderCapability.MODEL_SELECTION
)


class HealthStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class ProviderHealth:
    status: HealthStatus = HealthStatus.UNKNOWN
    detail: str = ""

    @property
    def is_usable(self) -> bool:
        return self.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)


@dataclass
class SendContext:
    """Everything a provider needs to produce one reply."""
    message: str
    session_id: str
    branch_id: str | None = None
    parent_session_id: str | None = None
    working_directory: str | None = None
    model: str | None = None
    project: str | None = None
    # True when this is the first send on a freshly created branch.
    is_new_session: bool = False
    # Store id of ``message`` when the caller persisted it before sending.
    user_message_id: int | None = None
    # Set after a context rotation: start a new backend session instead of
    # resuming or forking one.
    fresh_context: bool = False
    system_prompt: str | None = None
    extra: dict = field(default_factory=dict)


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations:
    - ClaudeCLIProvider: claude CLI subprocess with stream-json output
    - AnthropicAPIProvider: direct Messages API with a local tool loop
    - RemoteProvider: a peer grove server over HTTP + SSE
    """

    def __init__(self) -> None:
        self._health = ProviderHealth()

    @property
    @abc.abstractmethod
    def identifier(self) -> str:
        """Stable id used for routing preferences (e.g. 'claude-code')."""

    @property
    @abc.abstractmethod
    def display_name(self) -> str:
        """Human-readable name."""

    @property
    @abc.abstractmethod
    def capabilities(self) -> ProviderCapability:
        """Features this provider supports."""

    @property
    def is_running(self) -> bool:
        """Whether a send is currently in flight."""
        return False

    @property
    def health(self) -> ProviderHealth:
        """Result of the last check_health() call."""
        return self._health

    @abc.abstractmethod
    async def check_health(self) -> ProviderHealth:
        """Check the backend and cache the result in ``health``."""

    @abc.abstractmethod
    def send(self, context: SendContext) -> AsyncIterator[ProviderEvent]:
        """Stream canonical events for one reply.

        The stream ends with exactly one terminal event (done, error or
        cancelled).
        """

    @abc.abstractmethod
    async def cancel(self, session_id: str | None = None) -> None:
        """Abort the in-flight send for *session_id*, or all sends."""

    async def warm_up(self, context: SendContext) -> None:
        """Prepare per-session state before the first send. Default: nothing."""

    def forget(self, session_id: str) -> None:
        """Drop anything held for a session that no longer exists."""

    async def shutdown(self) -> None:
        """Release background resources. Default: cancel everything."""
        await self.cancel()

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a binary, preferring *command*, then *fallback*.

        Keeps the raw value when neither is on PATH so error messages name
        the configured command.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for provider %s",
                command, fallback, self.identifier,
            )
            return fallback
        return command or fallback or ""

    def describe(self) -> dict:
        return {
            "id": self.identifier,
            "name": self.display_name,
            "capabilities": self.capabilities.names(),
            "health": self._health.status.value,
            "detail": self._health.detail,
            "running": self.is_running,
        }
