"""Tests for the stream-json line parser used by the CLI provider."""
from __future__ import annotations

import json

from grove.adapters.events import TextEvent, ToolEndEvent, ToolStartEvent
from grove.engine.providers.cli_stream_parser import CLIStreamParser, truncate_result


def _line(obj: dict) -> bytes:
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")


def _stream_event(event: dict) -> bytes:
    return _line({"type": "stream_event", "event": event})


# ── Helper factories ──


def _tool_turn() -> bytes:
    """One assistant turn that uses a tool, announced both granularly and
    in the full assistant message."""
    return b"".join([
        _line({"type": "system", "subtype": "init", "session_id": "cli-abc"}),
        _stream_event({"type": "content_block_start", "index": 0,
                       "content_block": {"type": "text", "text": ""}}),
        _stream_event({"type": "content_block_delta", "index": 0,
                       "delta": {"type": "text_delta", "text": "Checking the file… "}}),
        _stream_event({"type": "content_block_start", "index": 1,
                       "content_block": {"type": "tool_use", "id": "tu_1", "name": "Read"}}),
        _stream_event({"type": "content_block_delta", "index": 1,
                       "delta": {"type": "input_json_delta", "partial_json": "{\"path\""}}),
        _stream_event({"type": "content_block_stop", "index": 1}),
        _line({"type": "assistant", "message": {"content": [
            {"type": "text", "text": "Checking the file… "},
            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"path": "a.py"}},
        ]}}),
        _line({"type": "user", "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": "x" * 500},
        ]}}),
        _stream_event({"type": "content_block_delta", "index": 0,
                       "delta": {"type": "text_delta", "text": "Done."}}),
        _line({"type": "result", "subtype": "success", "is_error": False,
               "total_cost_usd": 0.0123, "num_turns": 2, "result": "Done.",
               "session_id": "cli-abc",
               "usage": {"input_tokens": 40, "output_tokens": 12}}),
    ])


def test_tool_start_emitted_once_for_granular_and_full_message():
    parser = CLIStreamParser(result_display_length=200)
    events = parser.feed(_tool_turn())

    starts = [e for e in events if isinstance(e, ToolStartEvent)]
    assert len(starts) == 1
    assert starts[0].name == "Read"
    assert starts[0].tool_use_id == "tu_1"


def test_assistant_message_announces_tools_missed_by_stream_events():
    parser = CLIStreamParser()
    events = parser.feed(_line({"type": "assistant", "message": {"content": [
        {"type": "tool_use", "id": "tu_9", "name": "Bash", "input": {"command": "ls"}},
    ]}}))

    assert events == [ToolStartEvent(name="Bash", input='{"command": "ls"}', tool_use_id="tu_9")]


def test_event_sequence_and_result_fields():
    parser = CLIStreamParser(result_display_length=200)
    events = parser.feed(_tool_turn())

    assert [type(e) for e in events] == [TextEvent, ToolStartEvent, ToolEndEvent, TextEvent]
    assert events[0].text == "Checking the file… "
    end = events[2]
    assert end.name == "Read"
    assert end.result == "x" * 200 + "..."
    assert end.is_error is False
    assert parser.session_token == "cli-abc"
    assert parser.saw_result is True
    assert parser.result_is_error is False
    assert parser.result_text == "Done."
    usage = parser.usage
    assert (usage.input_tokens, usage.output_tokens) == (40, 12)
    assert usage.cost_usd == 0.0123
    assert usage.num_turns == 2


def test_split_at_every_offset_yields_same_events():
    payload = _tool_turn()
    expected = CLIStreamParser().feed(payload)

    for offset in range(1, len(payload)):
        parser = CLIStreamParser()
        events = parser.feed(payload[:offset]) + parser.feed(payload[offset:])
        assert events == expected, f"diverged when split at byte {offset}"


def test_byte_at_a_time_feeding():
    payload = _tool_turn()
    expected = CLIStreamParser().feed(payload)

    parser = CLIStreamParser()
    events = []
    for i in range(len(payload)):
        events.extend(parser.feed(payload[i:i + 1]))

    assert events == expected


def test_malformed_lines_are_dropped():
    parser = CLIStreamParser()
    events = parser.feed(
        b"not json at all\n"
        b"[1, 2, 3]\n"
        b"\n"
        + _stream_event({"type": "content_block_delta",
                         "delta": {"type": "text_delta", "text": "ok"}})
        + b"{\"type\": \"assistant\", \"message\": \n"
    )

    assert events == [TextEvent(text="ok")]


def test_flush_parses_trailing_line_without_newline():
    parser = CLIStreamParser()
    chunk = _stream_event({"type": "content_block_delta",
                           "delta": {"type": "text_delta", "text": "tail"}}).rstrip(b"\n")

    assert parser.feed(chunk) == []
    assert parser.flush() == [TextEvent(text="tail")]
    assert parser.flush() == []


def test_error_result_and_nested_event_shape():
    parser = CLIStreamParser()
    events = parser.feed(
        _stream_event({"event": "content_block_delta",
                       "data": {"delta": {"type": "text_delta", "text": "hi"}}})
        + _line({"type": "result", "is_error": True, "result": "quota exceeded"})
    )

    assert events == [TextEvent(text="hi")]
    assert parser.result_is_error is True
    assert parser.result_text == "quota exceeded"


def test_tool_message_type_and_structured_content():
    parser = CLIStreamParser(result_display_length=5)
    events = parser.feed(_line({
        "type": "tool", "name": "Grep", "tool_use_id": "tu_2", "is_error": True,
        "content": [{"type": "text", "text": "no matches found"}],
    }))

    assert events == [ToolEndEvent(name="Grep", result="no ma...", is_error=True, tool_use_id="tu_2")]


def test_truncate_result_boundary():
    assert truncate_result("abc", 3) == "abc"
    assert truncate_result("abcd", 3) == "abc..."
