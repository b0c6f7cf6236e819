"""Claude CLI provider: runs ``claude -p`` with stream-json output.

One subprocess per send. The CLI keeps its own conversation state keyed by
a session id it reports in its init event; that id is stored in the
SessionContinuityMap so later sends ``--resume`` it, and a new branch
forked from a parent ``--resume``s the parent's id with ``--fork-session``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    ProviderEvent,
)
from grove.engine.config import augmented_env
from grove.engine.identity import build_overlay
from grove.engine.providers.base import (
    HealthStatus,
    Provider,
    ProviderCapability,
    ProviderHealth,
    SendContext,
)
from grove.engine.providers.cli_stream_parser import CLIStreamParser
from grove.shared.services.session_continuity import SessionContinuityMap

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536
_STDERR_KEEP = 8192
_HEALTH_TIMEOUT_SECONDS = 15.0
# The CLI must use its own login, not an API key meant for the direct provider.
_STRIPPED_ENV = ("ANTHROPIC_API_KEY",)


class ClaudeCLIProvider(Provider):
    """Provider backed by the ``claude`` command-line tool."""

    def __init__(
        self,
        continuity: SessionContinuityMap,
        *,
        command: str = "claude",
        default_model: str | None = None,
        permission_flag: str = "--dangerously-skip-permissions",
        extra_path_dirs: list[str] | None = None,
        result_display_length: int = 200,
        provider_id: str = "claude-code",
    ) -> None:
        super().__init__()
        self._continuity = continuity
        self._command = command
        self._default_model = default_model
        self._permission_flag = permission_flag
        self._extra_path_dirs = extra_path_dirs or []
        self._display_length = result_display_length
        self._provider_id = provider_id
        self._live: dict[str, asyncio.subprocess.Process] = {}
        self._cancelled: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def identifier(self) -> str:
        return self._provider_id

    @property
    def display_name(self) -> str:
        return "Claude Code (CLI)"

    @property
    def capabilities(self) -> ProviderCapability:
        return (
            ProviderCapability.STREAMING
            | ProviderCapability.TOOL_EXECUTION
            | ProviderCapability.SESSION_RESUME
            | ProviderCapability.SESSION_FORK
            | ProviderCapability.MODEL_SELECTION
        )

    @property
    def is_running(self) -> bool:
        return bool(self._live)

    def build_args(self, context: SendContext) -> list[str]:
        """CLI arguments (without the binary) for one send."""
        args = ["--output-format", "stream-json", "--verbose"]
        if self._permission_flag:
            args.append(self._permission_flag)
        args.extend(["-p", context.message])
        model = context.model or self._default_model
        if model:
            args.extend(["--model", model])
        token = self._continuity.get(context.session_id, self.identifier)
        if token:
            args.extend(["--resume", token])
        elif context.parent_session_id and not context.fresh_context:
            # First CLI turn on a forked branch: branch off the parent's
            # CLI session so its context carries over.
            parent_token = self._continuity.get(context.parent_session_id, self.identifier)
            if parent_token:
                args.extend(["--resume", parent_token, "--fork-session"])
        args.extend(["--append-system-prompt", build_overlay(context)])
        return args

    async def send(self, context: SendContext) -> AsyncIterator[ProviderEvent]:
        session_id = context.session_id
        cmd = [self.resolve_command(self._command), *self.build_args(context)]

        launch_error: ErrorEvent | None = None
        async with self._lock:
            if session_id in self._live:
                launch_error = ErrorEvent(
                    message=f"A CLI process is already running for session {session_id}",
                    kind=ErrorKind.DOMAIN,
                )
            else:
                self._cancelled.discard(session_id)
                try:
                    proc = await asyncio.create_subprocess_exec(
                        *cmd,
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        cwd=context.working_directory or None,
                        env=augmented_env(self._extra_path_dirs, strip=_STRIPPED_ENV),
                    )
                except OSError as exc:
                    logger.warning("Failed to launch %s: %s", cmd[0], exc)
                    launch_error = ErrorEvent(
                        message=f"Failed to launch {self._command}: {exc}",
                        kind=ErrorKind.TRANSPORT,
                    )
                else:
                    self._live[session_id] = proc
        if launch_error is not None:
            yield launch_error
            return

        logger.info(
            "CLI started session=%s pid=%s resume=%s",
            session_id, proc.pid, "--resume" in cmd,
        )
        stderr_task = asyncio.create_task(self._collect_stderr(proc))
        parser = CLIStreamParser(result_display_length=self._display_length)
        try:
            if proc.stdout is None:
                raise RuntimeError("CLI subprocess started without a stdout pipe")
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                for event in parser.feed(chunk):
                    if session_id in self._cancelled:
                        break
                    yield event
                if session_id in self._cancelled:
                    break
            if session_id not in self._cancelled:
                for event in parser.flush():
                    yield event
            returncode = await proc.wait()
            stderr_tail = await stderr_task

            if parser.session_token:
                self._continuity.bind(session_id, self.identifier, parser.session_token)

            if session_id in self._cancelled:
                logger.info("CLI cancelled session=%s", session_id)
                yield CancelledEvent()
                return
            if parser.result_is_error:
                yield ErrorEvent(
                    message=parser.result_text or "CLI reported an error result",
                    kind=ErrorKind.SERVER,
                )
                return
            if returncode != 0:
                detail = f"CLI exited with status {returncode}"
                if stderr_tail:
                    detail += f": {stderr_tail.strip()[-500:]}"
                logger.warning("CLI failed session=%s rc=%s", session_id, returncode)
                yield ErrorEvent(message=detail, kind=ErrorKind.TRANSPORT)
                return
            yield DoneEvent(usage=parser.usage)
        finally:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    proc.kill()
            if not stderr_task.done():
                stderr_task.cancel()
            async with self._lock:
                if self._live.get(session_id) is proc:
                    del self._live[session_id]
            self._cancelled.discard(session_id)

    @staticmethod
    async def _collect_stderr(proc: asyncio.subprocess.Process) -> str:
        if proc.stderr is None:
            return ""
        kept = bytearray()
        while True:
            chunk = await proc.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            kept.extend(chunk)
            if len(kept) > _STDERR_KEEP:
                del kept[: len(kept) - _STDERR_KEEP]
        return kept.decode("utf-8", errors="replace")

    async def cancel(self, session_id: str | None = None) -> None:
        async with self._lock:
            targets = (
                [session_id] if session_id is not None else list(self._live)
            )
            for sid in targets:
                proc = self._live.get(sid)
                if proc is None:
                    continue
                self._cancelled.add(sid)
                if proc.returncode is None:
                    proc.terminate()
                logger.info("CLI cancel requested session=%s pid=%s", sid, proc.pid)

    def forget(self, session_id: str) -> None:
        self._continuity.unbind(session_id, self.identifier)

    async def check_health(self) -> ProviderHealth:
        command = self.resolve_command(self._command)
        try:
            proc = await asyncio.create_subprocess_exec(
                command, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=augmented_env(self._extra_path_dirs, strip=_STRIPPED_ENV),
            )
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=_HEALTH_TIMEOUT_SECONDS,
            )
        except OSError as exc:
            self._health = ProviderHealth(HealthStatus.UNAVAILABLE, f"{command}: {exc}")
        except asyncio.TimeoutError:
            proc.kill()
            self._health = ProviderHealth(HealthStatus.DEGRADED, "--version timed out")
        else:
            if proc.returncode == 0:
                version = stdout.decode("utf-8", errors="replace").strip()
                self._health = ProviderHealth(HealthStatus.HEALTHY, version)
            else:
                detail = stderr.decode("utf-8", errors="replace").strip()[:200]
                self._health = ProviderHealth(
                    HealthStatus.DEGRADED, f"--version exited {proc.returncode}: {detail}",
                )
        logger.debug("Health %s: %s", self.identifier, self._health)
        return self._health
