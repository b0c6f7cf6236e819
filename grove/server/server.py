"""HTTP + SSE surface for remote clients.

Exposes the tree list, session histories and a streaming send endpoint so
another grove (via RemoteProvider) or a chat bridge can drive
conversations. Every route except /health requires the shared token in
the ``x-grove-token`` header.

Usage:
    grove serve [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.app import GroveServices
from grove.engine.config import GROVE_HOME
from grove.engine.errors import (
    BranchBusyError,
    BranchNotFoundError,
    GroveError,
    JobNotFoundError,
)
from grove.engine.providers.remote_provider import TOKEN_HEADER
from grove.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

STATE_FILE = GROVE_HOME / "state" / "server.json"
MESSAGE_HISTORY_LIMIT = 100
REMOTE_TREE_NAME = "Remote"


class GroveServer:
    """aiohttp application over a GroveServices bundle.

    Thin adapter: conversation state lives in the stores and the
    ConversationService. This class only routes HTTP and frames SSE.
    """

    def __init__(
        self,
        services: GroveServices,
        host: str | None = None,
        port: int | None = None,
        token: str | None = None,
        state_file: Path | None = STATE_FILE,
    ):
        engine = services.engine
        self._services = services
        self._host = host or engine.server_host
        self._port = port if port is not None else engine.server_port
        self._token = token or engine.server_token or secrets.token_urlsafe(24)
        self._state_file = state_file
        self._started_at = time.time()
        self._request_count = 0
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._cors_middleware,
            self._auth_middleware,
        ])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def token(self) -> str:
        return self._token

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-grove-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204, headers={
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                "Access-Control-Allow-Headers": f"Content-Type, {TOKEN_HEADER}",
            })
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers["Access-Control-Allow-Origin"] = "*"
            raise
        if not response.prepared:
            response.headers["Access-Control-Allow-Origin"] = "*"
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.path != "/health":
            supplied = request.headers.get(TOKEN_HEADER, "")
            if not secrets.compare_digest(supplied.encode(), self._token.encode()):
                logger.warning("Unauthorized request req=%s path=%s", request.get("req_id"), request.path)
                return web.json_response({"error": "unauthorized"}, status=401)
        self._request_count += 1
        return await handler(request)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_get("/api/messages/{session_id}", self._handle_get_messages)
        r.add_post("/api/message", self._handle_message)
        # Background jobs
        r.add_get("/api/jobs", self._handle_list_jobs)
        r.add_post("/api/jobs", self._handle_create_job)
        r.add_post("/api/jobs/{id}/cancel", self._handle_cancel_job)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then shut the services down."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._started_at = time.time()
        logger.info("Grove server listening on %s:%d", self._host, self._port)
        self._write_state_file()
        asyncio.create_task(self._services.router.refresh_health())

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            self._remove_state_file()
            await self._services.shutdown()
            await runner.cleanup()

    def _write_state_file(self) -> None:
        """Publish url and token so local scripts can reach the server."""
        if self._state_file is None:
            return
        payload = {
            "url": f"http://{self._host}:{self._port}",
            "token": self._token,
            "pid": os.getpid(),
        }
        try:
            atomic_write_text(self._state_file, json.dumps(payload, indent=2))
            os.chmod(self._state_file, 0o600)
        except OSError:
            logger.warning("Could not write server state file %s", self._state_file, exc_info=True)

    def _remove_state_file(self) -> None:
        if self._state_file is not None:
            self._state_file.unlink(missing_ok=True)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "sessions": len(self._services.trees.list_trees()),
            "uptime": int(max(0.0, time.time() - self._started_at)),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        trees = self._services.trees.list_trees()
        return web.json_response([
            {
                "id": t.id,
                "name": t.name,
                "project": t.project or "",
                "updated_at": t.updated_at,
                "message_count": t.message_count,
            }
            for t in trees
        ])

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"].strip()
        if not session_id:
            return web.json_response({"error": "missing session id"}, status=400)
        branch = self._services.trees.get_branch_by_session(session_id)
        if branch is not None:
            await self._services.conversations.open_branch(branch.id)
        messages = self._services.messages.get_recent_messages(
            session_id, limit=MESSAGE_HISTORY_LIMIT,
        )
        return web.json_response([m.to_api() for m in messages])

    async def _handle_message(self, request: web.Request) -> web.StreamResponse:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "invalid JSON"}, status=400)
        content = str(body.get("content") or "").strip()
        if not content:
            return web.json_response({"error": "content required"}, status=400)
        session_id = body.get("session_id") or None
        project = body.get("project") or None

        try:
            branch_id = self._resolve_branch(session_id, project, content)
        except GroveError as exc:
            logger.error("Session resolution failed req=%s: %s", request.get("req_id"), exc)
            return web.json_response({"error": f"session error: {exc}"}, status=500)
        if self._services.conversations.is_busy(branch_id):
            return web.json_response({"error": "branch is busy"}, status=409)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        parts: list[str] = []
        stream = self._services.conversations.send(branch_id, content)
        try:
            async for event in stream:
                if isinstance(event, TextEvent):
                    parts.append(event.text)
                    await self._write_sse(response, {"token": event.text})
                elif isinstance(event, ToolStartEvent):
                    await self._write_sse(response, {"tool_start": event.name})
                elif isinstance(event, ToolEndEvent):
                    await self._write_sse(response, {"tool_end": event.name, "error": event.is_error})
                elif isinstance(event, DoneEvent):
                    await self._write_sse(response, {"done": True, "response": "".join(parts)})
                elif isinstance(event, ErrorEvent):
                    await self._write_sse(response, {"error": event.message})
                elif isinstance(event, CancelledEvent):
                    await self._write_sse(response, {"error": "cancelled"})
            await response.write_eof()
        except BranchBusyError as exc:
            await self._write_sse(response, {"error": str(exc)})
            await response.write_eof()
        except ConnectionResetError:
            logger.info("SSE client disconnected req=%s branch=%s", request.get("req_id"), branch_id)
        finally:
            await stream.aclose()
        return response

    def _resolve_branch(self, session_id: str | None, project: str | None, content: str) -> str:
        """Branch owning *session_id*, or a fresh tree + root branch."""
        if session_id:
            branch = self._services.trees.get_branch_by_session(session_id)
            if branch is not None:
                return branch.id
            logger.info("Unknown session %s; starting a new tree", session_id)
        name = f"{REMOTE_TREE_NAME} • {project}" if project else REMOTE_TREE_NAME
        _tree, branch = self._services.conversations.start_conversation(
            content, tree_name=name, project=project,
        )
        return branch.id

    @staticmethod
    async def _write_sse(response: web.StreamResponse, data: dict[str, Any]) -> None:
        await response.write(f"data: {json.dumps(data)}\n\n".encode())

    # ── Jobs ──

    async def _handle_list_jobs(self, request: web.Request) -> web.Response:
        jobs = self._services.jobs
        if request.query.get("active") in ("1", "true"):
            listed = jobs.active_jobs()
        else:
            try:
                limit = int(request.query.get("limit", "20"))
            except ValueError:
                return web.json_response({"error": "limit must be an integer"}, status=400)
            listed = jobs.recent_jobs(limit=limit)
        return web.json_response({"jobs": [j.to_dict() for j in listed]})

    async def _handle_create_job(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "invalid JSON"}, status=400)
        command = str(body.get("command") or "").strip()
        if not command:
            return web.json_response({"error": "command required"}, status=400)
        working_directory = body.get("working_directory") or os.getcwd()
        branch_id = body.get("branch_id") or None
        if branch_id is not None:
            try:
                self._services.trees.get_branch(branch_id)
            except BranchNotFoundError as exc:
                return web.json_response({"error": str(exc)}, status=404)
        job_id = await self._services.jobs.enqueue(command, working_directory, branch_id)
        return web.json_response({"id": job_id, "status": "queued"}, status=201)

    async def _handle_cancel_job(self, request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        try:
            job = await self._services.jobs.cancel(job_id)
        except JobNotFoundError as exc:
            return web.json_response({"error": str(exc)}, status=404)
        return web.json_response(job.to_dict())
