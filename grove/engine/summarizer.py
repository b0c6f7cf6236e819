"""Conversation summaries produced by a one-shot ``claude -p`` run.

Used for completed-branch summaries, the checkpoint that seeds a rotated
CLI session, and compact digests folded back into a parent branch. Every
failure (missing binary, non-zero exit, timeout, empty output) yields
None so callers can fall back.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import shutil
from typing import Sequence

from grove.engine.config import augmented_env
from grove.shared.models.message import Message, MessageRole
from grove.shared.services.message_store import MessageStore

logger = logging.getLogger(__name__)

TRANSCRIPT_CHARS = 15_000
CHECKPOINT_TRANSCRIPT_CHARS = 10_000
CHECKPOINT_RECENT_MESSAGES = 20
SUMMARY_TIMEOUT_SECONDS = 120.0

_ROLE_LABELS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.SYSTEM: "System",
}


class SummaryStyle(str, enum.Enum):
    BRANCH_COMPLETE = "branch_complete"
    CHECKPOINT = "checkpoint"
    DIGEST = "digest"


_PROMPTS = {
    SummaryStyle.BRANCH_COMPLETE: (
        "Summarize this conversation branch concisely. Capture:\n"
        "1. What was accomplished (key outcomes and decisions)\n"
        "2. What was discussed but not resolved\n"
        "3. Any code changes or files modified\n"
        "4. Key technical decisions and their rationale\n\n"
        "Keep it under 500 words. Use bullet points. Be specific about files and functions."
    ),
    SummaryStyle.CHECKPOINT: (
        "Create a working-state checkpoint of this conversation. It will be used to "
        "continue the conversation in a fresh context window. Capture:\n"
        "1. The current task and what is being worked on right now\n"
        "2. Decisions already made (do not re-discuss them)\n"
        "3. Files being modified and their current state\n"
        "4. Open questions and next steps\n"
        "5. Context that must not be lost\n\n"
        "Be comprehensive but compact, under 800 words."
    ),
    SummaryStyle.DIGEST: (
        "Create a compact digest of this branch's work for a parent conversation. Include:\n"
        "1. What was accomplished (2-3 sentences)\n"
        "2. Key results or findings\n"
        "3. Files changed, if any\n\n"
        "Keep it under 200 words. Dense, no filler."
    ),
}


def format_transcript(messages: Sequence[Message], max_chars: int) -> str:
    """Render ``[Role]: content`` blocks, cutting off after *max_chars*."""
    parts: list[str] = []
    remaining = max_chars
    for message in messages:
        content = message.content
        if len(content) > remaining:
            content = content[:remaining] + "..."
            remaining = 0
        else:
            remaining -= len(content)
        parts.append(f"[{_ROLE_LABELS.get(message.role, 'System')}]: {content}\n\n")
        if remaining <= 0:
            break
    return "".join(parts)


def build_prompt(style: SummaryStyle, transcript: str) -> str:
    return f"{_PROMPTS[style]}\n\nConversation:\n{transcript}"


class BranchSummarizer:
    """Summarizes a session's stored messages through the CLI."""

    def __init__(
        self,
        message_store: MessageStore,
        *,
        command: str = "claude",
        model: str = "claude-haiku-4-5",
        permission_flag: str = "--dangerously-skip-permissions",
        extra_path_dirs: list[str] | None = None,
        timeout: float = SUMMARY_TIMEOUT_SECONDS,
    ) -> None:
        self._messages = message_store
        self._command = command
        self._model = model
        self._permission_flag = permission_flag
        self._extra_path_dirs = extra_path_dirs or []
        self._timeout = timeout

    async def summarize(
        self, session_id: str, style: SummaryStyle = SummaryStyle.BRANCH_COMPLETE,
    ) -> str | None:
        history = self._messages.get_messages(session_id, limit=-1)
        if not history:
            return None
        transcript = format_transcript(history, TRANSCRIPT_CHARS)
        return await self._run(build_prompt(style, transcript))

    async def checkpoint(
        self, session_id: str, recent_message_count: int = CHECKPOINT_RECENT_MESSAGES,
    ) -> str | None:
        """Working-state summary weighted towards the latest messages."""
        history = self._messages.get_messages(session_id, limit=-1)
        if not history:
            return None
        recent = history[-recent_message_count:]
        earlier = history[:-recent_message_count] if len(history) > recent_message_count else []
        preface = ""
        if earlier:
            earlier_chars = sum(len(m.content) for m in earlier)
            preface = (
                f"[Earlier: {len(earlier)} messages, "
                f"~{earlier_chars // 4} tokens of prior context]\n\n"
            )
        transcript = preface + format_transcript(recent, CHECKPOINT_TRANSCRIPT_CHARS)
        return await self._run(build_prompt(SummaryStyle.CHECKPOINT, transcript))

    def build_args(self, prompt: str) -> list[str]:
        args = ["-p", prompt, "--output-format", "text", "--max-turns", "1"]
        if self._model:
            args.extend(["--model", self._model])
        if self._permission_flag:
            args.append(self._permission_flag)
        return args

    async def _run(self, prompt: str) -> str | None:
        env = augmented_env(self._extra_path_dirs, strip=("ANTHROPIC_API_KEY",))
        command = shutil.which(self._command, path=env["PATH"]) or self._command
        try:
            proc = await asyncio.create_subprocess_exec(
                command, *self.build_args(prompt),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=env,
            )
        except OSError as exc:
            logger.warning("Summarizer could not launch %s: %s", self._command, exc)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Summarizer timed out after %.0fs", self._timeout)
            return None
        output = stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0 or not output:
            logger.warning("Summarizer exited with status %s", proc.returncode)
            return None
        logger.debug("Summary produced chars=%d", len(output))
        return output
