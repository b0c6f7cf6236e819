"""Tests for RemoteProvider: SSE line mapping and HTTP behaviour against
an in-process aiohttp peer."""
from __future__ import annotations

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from grove.adapters.events import (
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.providers.base import HealthStatus, SendContext
from grove.engine.providers.remote_provider import (
    TOKEN_HEADER,
    RemoteProvider,
    parse_remote_line,
)


# ── Line mapping ──


def test_token_line():
    assert parse_remote_line('data: {"token": "hi"}') == [TextEvent(text="hi")]


def test_tool_lines():
    assert parse_remote_line('data: {"tool_start": "Bash"}') == [ToolStartEvent(name="Bash")]
    assert parse_remote_line('data: {"tool_end": "Bash", "error": true}') == [
        ToolEndEvent(name="Bash", is_error=True),
    ]


def test_error_and_done_lines():
    assert parse_remote_line('data: {"error": "boom"}') == [
        ErrorEvent(message="boom", kind=ErrorKind.SERVER),
    ]
    assert parse_remote_line('data: {"done": true, "response": "full text"}') == [DoneEvent()]


def test_ignored_lines():
    assert parse_remote_line("") == []
    assert parse_remote_line(": keep-alive") == []
    assert parse_remote_line("event: ping") == []
    assert parse_remote_line("data: not-json") == []
    assert parse_remote_line('data: ["list"]') == []
    assert parse_remote_line('data: {"unknown": 1}') == []
    assert parse_remote_line('data: {"done": false}') == []


# ── Helper factories ──


def _sse(*payloads: dict) -> bytes:
    return b"".join(f"data: {json.dumps(p)}\n\n".encode() for p in payloads)


async def _start_peer(handler) -> TestServer:
    app = web.Application()
    app.router.add_post("/api/message", handler)
    app.router.add_get("/health", handler)
    server = TestServer(app)
    await server.start_server()
    return server


async def _run(server: TestServer, token: str | None = "secret"):
    provider = RemoteProvider(str(server.make_url("")), token, timeout_seconds=10)
    context = SendContext(message="hello", session_id="s-1", project="api")
    return [event async for event in provider.send(context)]


# ── HTTP behaviour ──


@pytest.mark.asyncio
async def test_stream_relays_events_and_sends_token():
    received = {}

    async def handler(request):
        received["token"] = request.headers.get(TOKEN_HEADER)
        received["body"] = await request.json()
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(_sse(
            {"token": "Hel"},
            {"token": "lo"},
            {"tool_start": "Read"},
            {"tool_end": "Read", "error": False},
            {"done": True, "response": "Hello"},
        ))
        await response.write_eof()
        return response

    server = await _start_peer(handler)
    try:
        events = await _run(server)
    finally:
        await server.close()

    assert received["token"] == "secret"
    assert received["body"] == {"session_id": "s-1", "content": "hello", "project": "api"}
    assert events == [
        TextEvent(text="Hel"),
        TextEvent(text="lo"),
        ToolStartEvent(name="Read"),
        ToolEndEvent(name="Read", is_error=False),
        DoneEvent(),
    ]


@pytest.mark.asyncio
async def test_stream_without_done_is_completed():
    async def handler(request):
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(_sse({"token": "partial"}) + b": comment\n\n")
        await response.write_eof()
        return response

    server = await _start_peer(handler)
    try:
        events = await _run(server)
    finally:
        await server.close()

    assert events == [TextEvent(text="partial"), DoneEvent()]


@pytest.mark.asyncio
async def test_error_payload_ends_stream():
    async def handler(request):
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        await response.write(_sse({"error": "provider exploded"}, {"token": "ignored"}))
        await response.write_eof()
        return response

    server = await _start_peer(handler)
    try:
        events = await _run(server)
    finally:
        await server.close()

    assert events == [ErrorEvent(message="provider exploded", kind=ErrorKind.SERVER)]


@pytest.mark.asyncio
async def test_unauthorized_is_authorization_error():
    async def handler(request):
        return web.json_response({"error": "unauthorized"}, status=401)

    server = await _start_peer(handler)
    try:
        events = await _run(server, token="wrong")
    finally:
        await server.close()

    assert len(events) == 1
    assert events[0].kind is ErrorKind.AUTHORIZATION


@pytest.mark.asyncio
async def test_server_failure_is_server_error():
    async def handler(request):
        return web.Response(status=500, text="internal failure")

    server = await _start_peer(handler)
    try:
        events = await _run(server)
    finally:
        await server.close()

    assert len(events) == 1
    assert events[0].kind is ErrorKind.SERVER
    assert "500" in events[0].message


@pytest.mark.asyncio
async def test_unreachable_peer_is_transport_error():
    server = await _start_peer(lambda request: web.Response())
    url = str(server.make_url(""))
    await server.close()

    provider = RemoteProvider(url, None, timeout_seconds=5)
    events = [e async for e in provider.send(SendContext(message="hi", session_id="s"))]

    assert len(events) == 1
    assert events[0].kind is ErrorKind.TRANSPORT
    assert (await provider.check_health()).status is HealthStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_health_check_reads_peer_status():
    async def handler(request):
        return web.json_response({"status": "ok", "sessions": 3, "uptime": 12})

    server = await _start_peer(handler)
    try:
        provider = RemoteProvider(str(server.make_url("")), "secret")
        health = await provider.check_health()
    finally:
        await server.close()

    assert health.status is HealthStatus.HEALTHY
    assert health.detail == "3 sessions"
