from __future__ import annotations

from typing import AsyncIterator

import pytest

from grove.adapters.events import DoneEvent, ProviderEvent
from grove.engine.providers.base import (
    HealthStatus,
    Provider,
    ProviderCapability,
    ProviderHealth,
    SendContext,
)
from grove.shared.services.database import Database
from grove.shared.services.message_store import MessageStore
from grove.shared.services.tree_store import TreeStore


class ScriptedProvider(Provider):
    """Provider that replays a fixed event list and records each context."""

    def __init__(
        self,
        identifier: str = "scripted",
        events: list[ProviderEvent] | None = None,
        health: HealthStatus = HealthStatus.HEALTHY,
    ):
        super().__init__()
        self._identifier = identifier
        self.events = events if events is not None else [DoneEvent()]
        self.contexts: list[SendContext] = []
        self.cancelled: list[str | None] = []
        self.forgotten: list[str] = []
        self.warmed: list[str] = []
        self._status = health

    @property
    def identifier(self) -> str:
        return self._identifier

    @property
    def display_name(self) -> str:
        return f"Scripted ({self._identifier})"

    @property
    def capabilities(self) -> ProviderCapability:
        return ProviderCapability.STREAMING

    async def check_health(self) -> ProviderHealth:
        self._health = ProviderHealth(self._status, "scripted")
        return self._health

    async def send(self, context: SendContext) -> AsyncIterator[ProviderEvent]:
        self.contexts.append(context)
        for event in self.events:
            yield event

    async def cancel(self, session_id: str | None = None) -> None:
        self.cancelled.append(session_id)

    async def warm_up(self, context: SendContext) -> None:
        self.warmed.append(context.session_id)

    def forget(self, session_id: str) -> None:
        self.forgotten.append(session_id)


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "grove.db")


@pytest.fixture
def trees(db):
    return TreeStore(db)


@pytest.fixture
def messages(db):
    return MessageStore(db)
