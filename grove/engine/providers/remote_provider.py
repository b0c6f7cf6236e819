"""Remote provider: relays sends to a peer grove server over HTTP + SSE.

The peer's POST /api/message answers with ``data: <json>`` lines carrying
``token``, ``tool_start``, ``tool_end``, ``error`` or ``done`` fields.
Anything else on the wire is ignored. A stream that closes without
``done`` is treated as finished.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    ProviderEvent,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.providers.base import (
    HealthStatus,
    Provider,
    ProviderCapability,
    ProviderHealth,
    SendContext,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "x-grove-token"
_DATA_PREFIX = "data: "
_HEALTH_TIMEOUT_SECONDS = 10.0


def parse_remote_line(line: str) -> list[ProviderEvent]:
    """Map one SSE line from a peer to canonical events.

    Returns an empty list for lines that are not ``data:`` events or that
    carry no recognized field.
    """
    if not line.startswith(_DATA_PREFIX):
        return []
    try:
        payload = json.loads(line[len(_DATA_PREFIX):])
    except json.JSONDecodeError:
        logger.debug("Dropping malformed remote SSE line: %.200s", line)
        return []
    if not isinstance(payload, dict):
        return []
    events: list[ProviderEvent] = []
    token = payload.get("token")
    if isinstance(token, str) and token:
        events.append(TextEvent(text=token))
    if isinstance(payload.get("tool_start"), str):
        events.append(ToolStartEvent(name=payload["tool_start"]))
    if isinstance(payload.get("tool_end"), str):
        events.append(ToolEndEvent(
            name=payload["tool_end"],
            is_error=bool(payload.get("error", False)),
        ))
    elif isinstance(payload.get("error"), str):
        events.append(ErrorEvent(message=payload["error"], kind=ErrorKind.SERVER))
    if payload.get("done") is True:
        events.append(DoneEvent())
    return events


class RemoteProvider(Provider):
    """Provider that forwards to another grove server."""

    def __init__(
        self,
        base_url: str,
        token: str | None,
        *,
        timeout_seconds: float = 300.0,
        provider_id: str = "remote-grove",
    ) -> None:
        super().__init__()
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._provider_id = provider_id
        self._active: dict[str, asyncio.Event] = {}
        self._responses: dict[str, aiohttp.ClientResponse] = {}

    @property
    def identifier(self) -> str:
        return self._provider_id

    @property
    def display_name(self) -> str:
        return f"Remote grove ({self._base_url})"

    @property
    def capabilities(self) -> ProviderCapability:
        return ProviderCapability.STREAMING | ProviderCapability.SESSION_RESUME

    @property
    def is_running(self) -> bool:
        return bool(self._active)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self._token:
            headers[TOKEN_HEADER] = self._token
        return headers

    async def send(self, context: SendContext) -> AsyncIterator[ProviderEvent]:
        session_id = context.session_id
        cancel_event = asyncio.Event()
        self._active[session_id] = cancel_event
        body: dict[str, Any] = {
            "session_id": session_id,
            "content": context.message,
            "project": context.project or "",
        }
        timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(
                    f"{self._base_url}/api/message", json=body, headers=self._headers(),
                ) as response:
                    self._responses[session_id] = response
                    if response.status == 401:
                        yield ErrorEvent(
                            message="Remote server rejected the token",
                            kind=ErrorKind.AUTHORIZATION,
                        )
                        return
                    if response.status != 200:
                        detail = (await response.text())[:200]
                        yield ErrorEvent(
                            message=f"Remote server error {response.status}: {detail}",
                            kind=ErrorKind.SERVER,
                        )
                        return
                    async for raw in response.content:
                        if cancel_event.is_set():
                            yield CancelledEvent()
                            return
                        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                        for event in parse_remote_line(line):
                            yield event
                            if event.is_terminal:
                                return
            if cancel_event.is_set():
                yield CancelledEvent()
                return
            logger.debug("Remote stream closed without done session=%s", session_id)
            yield DoneEvent()
        except asyncio.TimeoutError:
            yield ErrorEvent(
                message=f"Remote request timed out after {self._timeout_seconds:.0f}s",
                kind=ErrorKind.TIMEOUT,
            )
        except aiohttp.ClientError as exc:
            if cancel_event.is_set():
                yield CancelledEvent()
                return
            logger.warning("Remote transport error %s: %s", self._base_url, exc)
            yield ErrorEvent(message=f"Connection error: {exc}", kind=ErrorKind.TRANSPORT)
        finally:
            self._active.pop(session_id, None)
            self._responses.pop(session_id, None)

    async def cancel(self, session_id: str | None = None) -> None:
        targets = list(self._active.values()) if session_id is None else [
            e for sid, e in self._active.items() if sid == session_id
        ]
        for event in targets:
            event.set()
        # Closing the response unblocks a read waiting on a silent peer.
        for sid, response in list(self._responses.items()):
            if session_id is None or sid == session_id:
                response.close()

    async def check_health(self) -> ProviderHealth:
        timeout = aiohttp.ClientTimeout(total=_HEALTH_TIMEOUT_SECONDS)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.get(f"{self._base_url}/health") as response:
                    if response.status != 200:
                        self._health = ProviderHealth(
                            HealthStatus.DEGRADED, f"/health returned {response.status}",
                        )
                    else:
                        data = await response.json(content_type=None)
                        if isinstance(data, dict) and data.get("status") == "ok":
                            self._health = ProviderHealth(
                                HealthStatus.HEALTHY, f"{data.get('sessions', 0)} sessions",
                            )
                        else:
                            self._health = ProviderHealth(
                                HealthStatus.DEGRADED, "unexpected /health payload",
                            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self._health = ProviderHealth(HealthStatus.UNAVAILABLE, str(exc) or type(exc).__name__)
        return self._health
