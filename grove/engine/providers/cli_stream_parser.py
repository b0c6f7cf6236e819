"""Incremental parser for the CLI's ``--output-format stream-json`` output.

Input is raw bytes in arbitrary chunks; only complete newline-terminated
lines are parsed, so splitting the stream at any byte offset yields the
same events. Event types handled:

- ``system`` (subtype ``init``): captures the CLI's resumable session id.
- ``stream_event``: granular content blocks. A tool_use block start emits
  ToolStartEvent at once and records the block id; text deltas emit
  TextEvent; input_json_delta is not surfaced.
- ``assistant``: the full turn. Emits ToolStartEvent for tool_use ids the
  granular events did not already cover, then forgets the seen ids.
- ``tool`` / ``user`` tool_result blocks: ToolEndEvent with a truncated
  result.
- ``result``: records cost, turn count and the error flag. No event; the
  provider emits DoneEvent when the process exits.

Malformed lines are dropped.
"""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from grove.adapters.events import (
    ProviderEvent,
    TextEvent,
    TokenUsage,
    ToolEndEvent,
    ToolStartEvent,
)

logger = logging.getLogger(__name__)


def truncate_result(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _content_to_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                if block.get("type") == "text":
                    parts.append(str(block.get("text", "")))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return json.dumps(content)


class CLIStreamParser:
    """Stateful stream-json parser for one CLI invocation."""

    def __init__(self, result_display_length: int = 200) -> None:
        self._display_length = result_display_length
        self._buffer = bytearray()
        # Tool-use ids already announced in the current assistant turn.
        self._emitted_tool_ids: set[str] = set()
        self._tool_names: dict[str, str] = {}
        self._current_tool_id: str | None = None

        self.session_token: str | None = None
        self.cost_usd: float | None = None
        self.num_turns: int | None = None
        self.result_is_error = False
        self.result_text: str | None = None
        self.saw_result = False
        self._usage = TokenUsage()

    # ── Byte-level feeding ──

    def feed(self, chunk: bytes) -> list[ProviderEvent]:
        """Consume *chunk* and return events for every completed line."""
        self._buffer.extend(chunk)
        events: list[ProviderEvent] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            events.extend(self.parse_line(raw.decode("utf-8", errors="replace")))
        return events

    def flush(self) -> list[ProviderEvent]:
        """Parse whatever remains after the stream closed."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        return self.parse_line(raw.decode("utf-8", errors="replace"))

    # ── Line-level parsing ──

    def parse_line(self, line: str) -> list[ProviderEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping malformed stream-json line: %.200s", line)
            return []
        if not isinstance(obj, dict):
            return []

        msg_type = obj.get("type")
        if msg_type == "system":
            if obj.get("subtype") == "init":
                token = obj.get("session_id") or obj.get("sessionId")
                if token:
                    self.session_token = str(token)
            return []
        if msg_type == "stream_event":
            return self._on_stream_event(obj.get("event"))
        if msg_type == "assistant":
            return self._on_assistant(obj)
        if msg_type == "tool":
            return self._on_tool(obj)
        if msg_type == "user":
            return self._on_user(obj)
        if msg_type == "result":
            self._on_result(obj)
            return []
        return []

    def _on_stream_event(self, event: Any) -> list[ProviderEvent]:
        if not isinstance(event, dict):
            return []
        # Two shapes are in the wild: {"event": name, "data": {...}} and
        # the flat Messages API shape {"type": name, ...}.
        name = event.get("event") or event.get("type")
        data = event.get("data") if isinstance(event.get("data"), dict) else event

        if name == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                tool_id = block.get("id") or str(uuid.uuid4())
                tool_name = block.get("name", "")
                self._current_tool_id = tool_id
                self._tool_names[tool_id] = tool_name
                if tool_id not in self._emitted_tool_ids:
                    self._emitted_tool_ids.add(tool_id)
                    return [ToolStartEvent(name=tool_name, input="{}", tool_use_id=tool_id)]
            return []
        if name == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text", "")
                if text:
                    return [TextEvent(text=text)]
            return []
        if name == "content_block_stop":
            self._current_tool_id = None
            return []
        if name == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self._usage.input_tokens += int(usage.get("input_tokens") or 0)
            self._usage.cache_creation_input_tokens += int(
                usage.get("cache_creation_input_tokens") or 0
            )
            self._usage.cache_read_input_tokens += int(usage.get("cache_read_input_tokens") or 0)
            return []
        if name == "message_delta":
            usage = data.get("usage") or {}
            self._usage.output_tokens += int(usage.get("output_tokens") or 0)
        return []

    def _on_assistant(self, obj: dict[str, Any]) -> list[ProviderEvent]:
        token = obj.get("session_id")
        if token:
            self.session_token = str(token)
        message = obj.get("message") or {}
        events: list[ProviderEvent] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            tool_id = block.get("id") or ""
            if not tool_id:
                continue
            self._tool_names[tool_id] = block.get("name", "")
            if tool_id in self._emitted_tool_ids:
                continue
            events.append(ToolStartEvent(
                name=block.get("name", ""),
                input=json.dumps(block.get("input") or {}),
                tool_use_id=tool_id,
            ))
        self._emitted_tool_ids.clear()
        return events

    def _on_tool(self, obj: dict[str, Any]) -> list[ProviderEvent]:
        name = obj.get("name") or obj.get("tool_name") or ""
        content = _content_to_text(obj.get("content", obj.get("result")))
        return [ToolEndEvent(
            name=name,
            result=truncate_result(content, self._display_length),
            is_error=bool(obj.get("is_error", False)),
            tool_use_id=obj.get("tool_use_id"),
        )]

    def _on_user(self, obj: dict[str, Any]) -> list[ProviderEvent]:
        message = obj.get("message") or {}
        content = message.get("content")
        if not isinstance(content, list):
            return []
        events: list[ProviderEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_id = block.get("tool_use_id") or ""
            events.append(ToolEndEvent(
                name=self._tool_names.get(tool_id, ""),
                result=truncate_result(_content_to_text(block.get("content")), self._display_length),
                is_error=bool(block.get("is_error", False)),
                tool_use_id=tool_id or None,
            ))
        return events

    def _on_result(self, obj: dict[str, Any]) -> None:
        self.saw_result = True
        cost = obj.get("total_cost_usd", obj.get("cost_usd"))
        if cost is not None:
            self.cost_usd = float(cost)
        if obj.get("num_turns") is not None:
            self.num_turns = int(obj["num_turns"])
        self.result_is_error = bool(obj.get("is_error", False))
        if isinstance(obj.get("result"), str):
            self.result_text = obj["result"]
        token = obj.get("session_id")
        if token:
            self.session_token = str(token)
        usage = obj.get("usage")
        if isinstance(usage, dict):
            # The result's usage is the authoritative total for the run.
            self._usage = TokenUsage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
                cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
                cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
            )

    @property
    def usage(self) -> TokenUsage:
        usage = TokenUsage(
            input_tokens=self._usage.input_tokens,
            output_tokens=self._usage.output_tokens,
            cache_creation_input_tokens=self._usage.cache_creation_input_tokens,
            cache_read_input_tokens=self._usage.cache_read_input_tokens,
        )
        usage.cost_usd = self.cost_usd
        usage.num_turns = self.num_turns
        return usage
