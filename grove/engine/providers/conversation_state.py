"""Per-session conversation state for the direct API provider.

A ConversationState holds the Messages API view of a session: system
blocks, the raw message list (including tool_use / tool_result blocks
that never reach the message store) and cumulative token usage. The
manager persists it in ``api_state`` so a restart resumes exactly where
the last completed turn left off.

Requests are built from a pruned copy of the history:

- the most recent messages are sent untouched;
- older messages keep their structure but long tool results are cut to a
  short preview;
- the oldest messages are reduced to their text.

If the estimate still exceeds the token budget, the oldest messages are
dropped.
"""
from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from grove.adapters.events import TokenUsage
from grove.shared.models.message import Message, MessageRole
from grove.shared.services.database import Database, utc_now_iso

logger = logging.getLogger(__name__)

FULL_CONTEXT_WINDOW = 12
TRUNCATED_CONTEXT_WINDOW = 24
MAX_ESTIMATED_TOKENS = 150_000
TOOL_RESULT_TRUNCATE_THRESHOLD = 500
TOOL_RESULT_PREVIEW_LENGTH = 200
MAX_TOOL_RESULT_SIZE = 50_000
_OMITTED = "[tool activity omitted]"


def estimate_tokens(value: Any) -> int:
    """Rough token estimate: four characters per token."""
    if isinstance(value, str):
        return len(value) // 4
    return len(json.dumps(value, ensure_ascii=False)) // 4


def _truncate_tool_result(block: dict[str, Any]) -> dict[str, Any]:
    content = block.get("content")
    text = content if isinstance(content, str) else json.dumps(content)
    if len(text) <= TOOL_RESULT_TRUNCATE_THRESHOLD:
        return block
    preview = text[:TOOL_RESULT_PREVIEW_LENGTH]
    return {
        **block,
        "content": f"{preview}\n[truncated {len(text) - len(preview)} chars]",
    }


def _text_only(message: dict[str, Any]) -> dict[str, Any]:
    content = message.get("content")
    if isinstance(content, str):
        return message
    texts = [
        b.get("text", "") for b in content or []
        if isinstance(b, dict) and b.get("type") == "text" and b.get("text")
    ]
    return {"role": message["role"], "content": "\n".join(texts) or _OMITTED}


@dataclass
class ConversationState:
    session_id: str
    system_prompt: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def add_user_text(self, text: str) -> None:
        self.messages.append({"role": "user", "content": text})

    def add_assistant_blocks(self, blocks: list[dict[str, Any]]) -> None:
        self.messages.append({"role": "assistant", "content": blocks or [{"type": "text", "text": ""}]})

    def add_tool_results(self, results: list[dict[str, Any]]) -> None:
        capped = []
        for result in results:
            content = result.get("content")
            if isinstance(content, str) and len(content) > MAX_TOOL_RESULT_SIZE:
                result = {
                    **result,
                    "content": content[:MAX_TOOL_RESULT_SIZE]
                    + f"\n[Result truncated at {MAX_TOOL_RESULT_SIZE} chars]",
                }
            capped.append(result)
        self.messages.append({"role": "user", "content": capped})

    def system_blocks(self, overlay: str | None = None) -> list[dict[str, Any]]:
        """System prompt blocks; the stable prefix carries a cache marker."""
        blocks: list[dict[str, Any]] = []
        if self.system_prompt:
            blocks.append({
                "type": "text",
                "text": self.system_prompt,
                "cache_control": {"type": "ephemeral"},
            })
        if overlay:
            blocks.append({"type": "text", "text": overlay})
        return blocks

    def prepared_messages(self) -> list[dict[str, Any]]:
        """Pruned copy of the history for the next request."""
        total = len(self.messages)
        prepared: list[dict[str, Any]] = []
        for index, message in enumerate(self.messages):
            age = total - index
            if age <= FULL_CONTEXT_WINDOW:
                prepared.append(copy.deepcopy(message))
            elif age <= FULL_CONTEXT_WINDOW + TRUNCATED_CONTEXT_WINDOW:
                content = message.get("content")
                if isinstance(content, list):
                    content = [
                        _truncate_tool_result(b)
                        if isinstance(b, dict) and b.get("type") == "tool_result" else b
                        for b in content
                    ]
                prepared.append({"role": message["role"], "content": copy.deepcopy(content)})
            else:
                prepared.append(_text_only(message))

        _repair_tool_pairs(prepared)

        while (
            len(prepared) > FULL_CONTEXT_WINDOW
            and estimate_tokens(prepared) > MAX_ESTIMATED_TOKENS
        ):
            prepared.pop(0)
        # A request must open with a plain user turn.
        while prepared and (
            prepared[0]["role"] != "user" or _has_tool_results(prepared[0])
        ):
            prepared.pop(0)
        return prepared

    def fork(self, session_id: str) -> ConversationState:
        return ConversationState(
            session_id=session_id,
            system_prompt=self.system_prompt,
            messages=copy.deepcopy(self.messages),
        )


def _tool_ids(message: dict[str, Any], block_type: str, key: str) -> set[str]:
    content = message.get("content")
    if not isinstance(content, list):
        return set()
    return {
        b.get(key) for b in content
        if isinstance(b, dict) and b.get("type") == block_type and b.get(key)
    }


def _repair_tool_pairs(prepared: list[dict[str, Any]]) -> None:
    """Reduce to text any tool_use / tool_result half whose partner was
    flattened by an older pruning tier."""
    for index, message in enumerate(prepared):
        if message["role"] != "user":
            continue
        results = _tool_ids(message, "tool_result", "tool_use_id")
        if not results:
            continue
        previous = prepared[index - 1] if index > 0 else None
        uses = _tool_ids(previous, "tool_use", "id") if previous else set()
        if not results <= uses:
            prepared[index] = _text_only(message)
            if previous is not None:
                prepared[index - 1] = _text_only(previous)
    for index, message in enumerate(prepared):
        if message["role"] != "assistant" or not _tool_ids(message, "tool_use", "id"):
            continue
        following = prepared[index + 1] if index + 1 < len(prepared) else None
        if following is None or not _tool_ids(following, "tool_result", "tool_use_id"):
            prepared[index] = _text_only(message)


def _has_tool_results(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )


class ConversationStateManager:
    """Loads, saves and builds ConversationState rows."""

    def __init__(self, db: Database):
        self._db = db

    def load(self, session_id: str) -> ConversationState | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_state WHERE session_id = ?", (session_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            messages = json.loads(row["api_messages"])
            usage = TokenUsage.from_dict(json.loads(row["token_usage"] or "{}"))
        except json.JSONDecodeError:
            logger.warning("Corrupt api_state for session %s; ignoring", session_id)
            return None
        return ConversationState(
            session_id=session_id,
            system_prompt=row["system_prompt"],
            messages=messages,
            usage=usage,
        )

    def save(self, state: ConversationState) -> None:
        usage = {
            k: v for k, v in vars(state.usage).items() if v is not None
        }
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO api_state"
                "(session_id, api_messages, system_prompt, token_usage, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    state.session_id,
                    json.dumps(state.messages),
                    state.system_prompt,
                    json.dumps(usage),
                    utc_now_iso(),
                ),
            )

    def delete(self, session_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM api_state WHERE session_id = ?", (session_id,))

    @staticmethod
    def build_from_messages(
        session_id: str, messages: list[Message],
    ) -> ConversationState:
        """Rebuild API state from the stored text history.

        System messages (context snapshots) become the system prompt.
        Consecutive same-role messages are merged since the API expects
        alternating turns.
        """
        system_parts: list[str] = []
        api_messages: list[dict[str, Any]] = []
        for message in messages:
            if message.role == MessageRole.SYSTEM:
                system_parts.append(message.content)
                continue
            role = message.role.value
            if api_messages and api_messages[-1]["role"] == role:
                api_messages[-1]["content"] += "\n\n" + message.content
            else:
                api_messages.append({"role": role, "content": message.content})
        return ConversationState(
            session_id=session_id,
            system_prompt="\n\n".join(system_parts),
            messages=api_messages,
        )

    def record_usage(
        self,
        session_id: str,
        provider: str,
        model: str | None,
        usage: TokenUsage,
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO token_usage(
                    session_id, provider, model, input_tokens, output_tokens,
                    cache_creation_input_tokens, cache_read_input_tokens,
                    cost_usd, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id, provider, model, usage.input_tokens, usage.output_tokens,
                    usage.cache_creation_input_tokens, usage.cache_read_input_tokens,
                    usage.cost_usd, utc_now_iso(),
                ),
            )

    def session_usage(self, session_id: str) -> TokenUsage:
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens,
                       COALESCE(SUM(cache_creation_input_tokens), 0) AS cache_creation_input_tokens,
                       COALESCE(SUM(cache_read_input_tokens), 0) AS cache_read_input_tokens,
                       SUM(cost_usd) AS cost_usd
                FROM token_usage WHERE session_id = ?
                """,
                (session_id,),
            ).fetchone()
        return TokenUsage(
            input_tokens=int(row["input_tokens"]),
            output_tokens=int(row["output_tokens"]),
            cache_creation_input_tokens=int(row["cache_creation_input_tokens"]),
            cache_read_input_tokens=int(row["cache_read_input_tokens"]),
            cost_usd=row["cost_usd"],
        )
