"""Local tools exposed to the direct API provider.

The CLI provider runs its own tools; the API provider asks a ToolExecutor.
LocalToolExecutor runs file, shell and search tools inside the branch's
working directory and hands long-running commands to the JobQueue. Every
call is rated by tool_guard first; destructive calls run only when an
approver consents.
"""
from __future__ import annotations

import abc
import asyncio
import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from grove.engine import tool_guard
from grove.engine.config import augmented_env
from grove.engine.tool_guard import Assessment, RiskLevel

if TYPE_CHECKING:
    from grove.shared.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

WRITE_TOOLS = frozenset({"write_file", "edit_file"})
CHECKPOINT_TOOL = "checkpoint_create"

BASH_TIMEOUT_SECONDS = 120.0
MAX_OUTPUT_CHARS = 30_000
MAX_READ_CHARS = 100_000
MAX_SEARCH_RESULTS = 200
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache"}


@dataclass
class ToolResult:
    content: str
    is_error: bool = False


@dataclass
class ToolCallContext:
    working_directory: str
    session_id: str
    branch_id: str | None = None


TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read a UTF-8 text file relative to the working directory.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": "Create or overwrite a text file.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
    },
    {
        "name": "edit_file",
        "description": "Replace one exact occurrence of old_string with new_string in a file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "old_string": {"type": "string"},
                "new_string": {"type": "string"},
            },
            "required": ["path", "old_string", "new_string"],
        },
    },
    {
        "name": "bash",
        "description": "Run a short shell command (two-minute limit) and return its output.",
        "input_schema": {
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
    },
    {
        "name": "glob",
        "description": "List files matching a glob pattern such as '**/*.py'.",
        "input_schema": {
            "type": "object",
            "properties": {"pattern": {"type": "string"}},
            "required": ["pattern"],
        },
    },
    {
        "name": "grep",
        "description": "Search file contents for a regular expression.",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "glob": {"type": "string"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": CHECKPOINT_TOOL,
        "description": "Snapshot uncommitted changes with git stash so they can be restored.",
        "input_schema": {
            "type": "object",
            "properties": {"message": {"type": "string"}},
        },
    },
    {
        "name": "background_run",
        "description": "Start a long-running shell command as a background job and return its id.",
        "input_schema": {
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
    },
]


Approver = Callable[[Assessment, ToolCallContext], Awaitable[bool]]


class ToolExecutor(abc.ABC):
    """Executes tool calls requested by the model."""

    @abc.abstractmethod
    def definitions(self) -> list[dict[str, Any]]:
        """Tool schemas sent with each API request."""

    @abc.abstractmethod
    async def execute(
        self, name: str, tool_input: dict[str, Any], context: ToolCallContext,
    ) -> ToolResult:
        """Run one tool. Failures are returned as is_error results."""


class LocalToolExecutor(ToolExecutor):
    """Runs tools on the local filesystem."""

    def __init__(
        self,
        job_queue: JobQueue | None = None,
        extra_path_dirs: list[str] | None = None,
        approver: Approver | None = None,
    ) -> None:
        self._job_queue = job_queue
        self._extra_path_dirs = extra_path_dirs or []
        self._approver = approver

    def definitions(self) -> list[dict[str, Any]]:
        if self._job_queue is None:
            return [d for d in TOOL_DEFINITIONS if d["name"] != "background_run"]
        return list(TOOL_DEFINITIONS)

    async def execute(
        self, name: str, tool_input: dict[str, Any], context: ToolCallContext,
    ) -> ToolResult:
        handler = getattr(self, f"_tool_{name}", None)
        if handler is None:
            return ToolResult(f"Unknown tool: {name}", is_error=True)
        assessment = tool_guard.assess(name, tool_input, context.working_directory)
        if assessment.requires_approval and not await self._approved(assessment, context):
            logger.warning(
                "Tool %s blocked session=%s level=%s: %s",
                name, context.session_id, assessment.level.name, assessment.reason,
            )
            return ToolResult(
                f"Blocked: {assessment.reason} ({assessment.level.name.lower()} risk, not approved)",
                is_error=True,
            )
        if assessment.level is RiskLevel.CAUTION:
            logger.info("Tool %s caution session=%s: %s", name, context.session_id, assessment.reason)
        try:
            return await handler(tool_input, context)
        except KeyError as exc:
            return ToolResult(f"Missing required argument: {exc.args[0]}", is_error=True)
        except (OSError, ValueError, re.error) as exc:
            logger.debug("Tool %s failed: %s", name, exc)
            return ToolResult(f"{type(exc).__name__}: {exc}", is_error=True)

    async def _approved(self, assessment: Assessment, context: ToolCallContext) -> bool:
        if self._approver is None:
            return False
        try:
            return bool(await self._approver(assessment, context))
        except Exception:
            logger.exception("Approver failed for tool %s", assessment.tool_name)
            return False

    @staticmethod
    def _resolve(context: ToolCallContext, raw: str) -> Path:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = Path(context.working_directory) / path
        return path

    async def _tool_read_file(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        path = self._resolve(context, tool_input["path"])
        text = path.read_text(encoding="utf-8", errors="replace")
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + f"\n[File truncated at {MAX_READ_CHARS} chars]"
        return ToolResult(text)

    async def _tool_write_file(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        path = self._resolve(context, tool_input["path"])
        content = tool_input["content"]
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return ToolResult(f"Wrote {len(content)} chars to {path}")

    async def _tool_edit_file(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        path = self._resolve(context, tool_input["path"])
        old, new = tool_input["old_string"], tool_input["new_string"]
        text = path.read_text(encoding="utf-8")
        count = text.count(old)
        if count == 0:
            return ToolResult(f"old_string not found in {path}", is_error=True)
        if count > 1:
            return ToolResult(
                f"old_string occurs {count} times in {path}; make it unique", is_error=True,
            )
        path.write_text(text.replace(old, new, 1), encoding="utf-8")
        return ToolResult(f"Edited {path}")

    async def _run(self, argv: list[str], cwd: str, timeout: float) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=augmented_env(self._extra_path_dirs),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, f"Command timed out after {timeout:.0f}s"
        text = stdout.decode("utf-8", errors="replace")
        if len(text) > MAX_OUTPUT_CHARS:
            text = text[:MAX_OUTPUT_CHARS] + f"\n[Output truncated at {MAX_OUTPUT_CHARS} chars]"
        return proc.returncode or 0, text

    async def _tool_bash(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        code, output = await self._run(
            ["/bin/bash", "-c", tool_input["command"]],
            context.working_directory,
            BASH_TIMEOUT_SECONDS,
        )
        if code != 0:
            return ToolResult(f"{output}\n[exit code {code}]".strip(), is_error=True)
        return ToolResult(output or "(no output)")

    async def _tool_glob(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        root = Path(context.working_directory)
        matches = []
        for path in sorted(root.glob(tool_input["pattern"])):
            if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
                continue
            matches.append(str(path.relative_to(root)))
            if len(matches) >= MAX_SEARCH_RESULTS:
                break
        return ToolResult("\n".join(matches) or "No files matched")

    async def _tool_grep(self, tool_input: dict, context: ToolCallContext) -> ToolResult:
        regex = re.compile(tool_input["pattern"])
        file_glob = tool_input.get("glob") or "*"
        root = Path(context.working_directory)
        hits: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
            for filename in filenames:
                if not fnmatch.fnmatch(filename, file_glob):
                    continue
                path = Path(dirpath) / filename
                try:
                    with open(path, encoding="utf-8", errors="strict") as f:
                        for lineno, line in enumerate(f, 1):
                            if regex.search(line):
                                rel = path.relative_to(root)
                                hits.append(f"{rel}:{lineno}:{line.rstrip()[:300]}")
                                if len(hits) >= MAX_SEARCH_RESULTS:
                                    return ToolResult("\n".join(hits))
                except (UnicodeDecodeError, OSError):
                    continue
        return ToolResult("\n".join(hits) or "No matches")

    async def _tool_checkpoint_create(
        self, tool_input: dict, context: ToolCallContext,
    ) -> ToolResult:
        message = tool_input.get("message") or "grove checkpoint"
        code, sha = await self._run(
            ["git", "stash", "create"], context.working_directory, 30.0,
        )
        sha = sha.strip()
        if code != 0:
            return ToolResult(f"Checkpoint failed: {sha}", is_error=True)
        if not sha:
            return ToolResult("No uncommitted changes to checkpoint")
        code, output = await self._run(
            ["git", "stash", "store", "-m", message, sha], context.working_directory, 30.0,
        )
        if code != 0:
            return ToolResult(f"Checkpoint failed: {output.strip()}", is_error=True)
        return ToolResult(f"Checkpoint {sha[:12]} stored: {message}")

    async def _tool_background_run(
        self, tool_input: dict, context: ToolCallContext,
    ) -> ToolResult:
        if self._job_queue is None:
            return ToolResult("Background jobs are not available", is_error=True)
        job_id = await self._job_queue.enqueue(
            tool_input["command"], context.working_directory, branch_id=context.branch_id,
        )
        return ToolResult(f"Started background job {job_id}")
