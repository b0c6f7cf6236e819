"""Tests for API conversation state: pruning tiers, persistence and rebuilds."""
from __future__ import annotations

from grove.adapters.events import TokenUsage
from grove.engine.providers.conversation_state import (
    FULL_CONTEXT_WINDOW,
    MAX_ESTIMATED_TOKENS,
    MAX_TOOL_RESULT_SIZE,
    ConversationState,
    ConversationStateManager,
    estimate_tokens,
)
from grove.shared.models.message import Message, MessageRole


# ── Helper factories ──


def _tool_use(tool_id: str) -> dict:
    return {"role": "assistant", "content": [
        {"type": "text", "text": f"running {tool_id}"},
        {"type": "tool_use", "id": tool_id, "name": "bash", "input": {"command": "ls"}},
    ]}


def _tool_result(tool_id: str, content: str) -> dict:
    return {"role": "user", "content": [
        {"type": "tool_result", "tool_use_id": tool_id, "content": content},
    ]}


def _forty_message_history() -> list[dict]:
    """40 alternating turns. Index 3/4 is a tool pair straddling the
    oldest/middle tier boundary; index 9/10 is a pair in the middle tier."""
    messages: list[dict] = []
    for index in range(40):
        if index == 3:
            messages.append(_tool_use("t-old"))
        elif index == 4:
            messages.append(_tool_result("t-old", "old output"))
        elif index == 9:
            messages.append(_tool_use("t-mid"))
        elif index == 10:
            messages.append(_tool_result("t-mid", "x" * 1000))
        elif index % 2 == 0:
            messages.append({"role": "user", "content": f"q{index}"})
        else:
            messages.append({"role": "assistant", "content": [{"type": "text", "text": f"a{index}"}]})
    return messages


def _message(message_id: int, role: MessageRole, content: str) -> Message:
    return Message(id=message_id, session_id="s", role=role, content=content, timestamp="t")


# ── Pruning ──


def test_recent_window_is_untouched_copy():
    state = ConversationState("s", messages=_forty_message_history())

    prepared = state.prepared_messages()

    assert len(prepared) == 40
    assert prepared[-FULL_CONTEXT_WINDOW:] == state.messages[-FULL_CONTEXT_WINDOW:]
    prepared[-1]["content"][0]["text"] = "mutated"
    assert state.messages[-1]["content"][0]["text"] == "a39"


def test_oldest_tier_is_reduced_to_text():
    state = ConversationState("s", messages=_forty_message_history())

    prepared = state.prepared_messages()

    assert prepared[0] == {"role": "user", "content": "q0"}
    assert prepared[1] == {"role": "assistant", "content": "a1"}
    assert prepared[3] == {"role": "assistant", "content": "running t-old"}


def test_orphaned_tool_result_is_flattened():
    state = ConversationState("s", messages=_forty_message_history())

    prepared = state.prepared_messages()

    # Its tool_use was flattened by the oldest tier, so the result cannot
    # stay a structured tool_result.
    assert prepared[4] == {"role": "user", "content": "[tool activity omitted]"}


def test_middle_tier_truncates_long_tool_results():
    state = ConversationState("s", messages=_forty_message_history())

    prepared = state.prepared_messages()

    assert prepared[9]["content"][1]["type"] == "tool_use"
    result = prepared[10]["content"][0]
    assert result["type"] == "tool_result"
    assert result["tool_use_id"] == "t-mid"
    assert result["content"].startswith("x" * 200)
    assert result["content"].endswith("[truncated 800 chars]")
    assert state.messages[10]["content"][0]["content"] == "x" * 1000


def test_budget_drops_oldest_and_opens_with_user_turn():
    messages = []
    for index in range(20):
        role = "user" if index % 2 == 0 else "assistant"
        messages.append({"role": role, "content": f"{index}:" + "w" * 40_000})
    state = ConversationState("s", messages=messages)

    prepared = state.prepared_messages()

    assert estimate_tokens(prepared) <= MAX_ESTIMATED_TOKENS
    assert len(prepared) >= FULL_CONTEXT_WINDOW
    assert prepared[0]["role"] == "user"
    assert prepared[-1] == messages[-1]


def test_unanswered_tool_use_is_flattened():
    state = ConversationState("s", messages=[
        {"role": "user", "content": "go"},
        _tool_use("t-dangling"),
    ])

    prepared = state.prepared_messages()

    assert prepared[1] == {"role": "assistant", "content": "running t-dangling"}


def test_tool_results_are_capped_on_add():
    state = ConversationState("s")
    state.add_tool_results([
        {"type": "tool_result", "tool_use_id": "t", "content": "y" * (MAX_TOOL_RESULT_SIZE + 10)},
    ])

    content = state.messages[0]["content"][0]["content"]
    assert content.endswith(f"[Result truncated at {MAX_TOOL_RESULT_SIZE} chars]")


def test_system_blocks_mark_stable_prefix_for_caching():
    state = ConversationState("s", system_prompt="Context snapshot")

    blocks = state.system_blocks("overlay text")

    assert blocks[0]["cache_control"] == {"type": "ephemeral"}
    assert blocks[1] == {"type": "text", "text": "overlay text"}
    assert ConversationState("s").system_blocks() == []


def test_fork_is_independent():
    parent = ConversationState("p", system_prompt="sys", messages=[{"role": "user", "content": "q"}])
    parent.usage.input_tokens = 50

    child = parent.fork("c")
    child.add_user_text("more")

    assert child.session_id == "c"
    assert child.system_prompt == "sys"
    assert len(parent.messages) == 1
    assert child.usage.input_tokens == 0


# ── Manager ──


def test_build_from_messages_merges_and_lifts_system():
    history = [
        _message(1, MessageRole.SYSTEM, "Context: payments"),
        _message(2, MessageRole.USER, "first"),
        _message(3, MessageRole.USER, "second"),
        _message(4, MessageRole.ASSISTANT, "answer"),
    ]

    state = ConversationStateManager.build_from_messages("s", history)

    assert state.system_prompt == "Context: payments"
    assert state.messages == [
        {"role": "user", "content": "first\n\nsecond"},
        {"role": "assistant", "content": "answer"},
    ]


def test_save_and_load_round_trip(db):
    manager = ConversationStateManager(db)
    state = ConversationState("s1", system_prompt="sys", messages=[_tool_use("t1")])
    state.usage = TokenUsage(input_tokens=10, output_tokens=3)

    manager.save(state)
    loaded = manager.load("s1")

    assert loaded.messages == state.messages
    assert loaded.system_prompt == "sys"
    assert (loaded.usage.input_tokens, loaded.usage.output_tokens) == (10, 3)
    assert manager.load("unknown") is None

    manager.delete("s1")
    assert manager.load("s1") is None


def test_corrupt_state_row_is_ignored(db):
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO api_state(session_id, api_messages, system_prompt, token_usage, updated_at) "
            "VALUES ('bad', '{not json', '', '{}', 'now')"
        )

    assert ConversationStateManager(db).load("bad") is None


def test_usage_ledger_sums_per_session(db):
    manager = ConversationStateManager(db)
    manager.record_usage("s1", "anthropic-api", "m", TokenUsage(input_tokens=5, output_tokens=2))
    manager.record_usage("s1", "anthropic-api", "m", TokenUsage(input_tokens=7, output_tokens=1))
    manager.record_usage("s2", "anthropic-api", "m", TokenUsage(input_tokens=100))

    total = manager.session_usage("s1")

    assert (total.input_tokens, total.output_tokens) == (12, 3)
    assert total.cost_usd is None
