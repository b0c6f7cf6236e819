"""Tests for BranchSummarizer against fake CLI shell scripts."""
from __future__ import annotations

import stat

import pytest

from grove.engine.summarizer import (
    BranchSummarizer,
    SummaryStyle,
    build_prompt,
    format_transcript,
)
from grove.shared.models.message import MessageRole


def _fake_cli(tmp_path, body: str) -> str:
    script = tmp_path / "fake-claude"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


def _recording_cli(tmp_path, output: str = "  - fixed the retry loop  ") -> str:
    """CLI that writes its argv and API key state to args.txt, then prints *output*."""
    record = tmp_path / "args.txt"
    return _fake_cli(
        tmp_path,
        f'printf "%s\\n" "$@" > "{record}"\n'
        f'echo "key=${{ANTHROPIC_API_KEY:-unset}}" >> "{record}"\n'
        f"echo '{output}'\n",
    )


def _summarizer(messages, command: str, **kwargs) -> BranchSummarizer:
    return BranchSummarizer(messages, command=command, extra_path_dirs=[], **kwargs)


@pytest.fixture
def session(messages):
    messages.append("s1", MessageRole.USER, "why does the retry loop spin?")
    messages.append("s1", MessageRole.ASSISTANT, "the backoff is never applied")
    return "s1"


# ── Formatting ──


def test_format_transcript_labels_roles_and_truncates(messages, session):
    history = messages.get_messages(session)

    full = format_transcript(history, 10_000)
    cut = format_transcript(history, 10)

    assert full.startswith("[User]: why does the retry loop spin?\n\n[Assistant]: ")
    assert cut == "[User]: why does t...\n\n"


def test_prompts_differ_by_style():
    prompts = {style: build_prompt(style, "T") for style in SummaryStyle}

    assert all(p.endswith("Conversation:\nT") for p in prompts.values())
    assert "fresh context window" in prompts[SummaryStyle.CHECKPOINT]
    assert "under 200 words" in prompts[SummaryStyle.DIGEST]
    assert "under 500 words" in prompts[SummaryStyle.BRANCH_COMPLETE]


# ── CLI runs ──


@pytest.mark.asyncio
async def test_summarize_runs_one_shot_cli(messages, session, tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-should-not-leak")
    summarizer = _summarizer(messages, _recording_cli(tmp_path), model="haiku-test")

    summary = await summarizer.summarize(session)

    assert summary == "- fixed the retry loop"
    recorded = (tmp_path / "args.txt").read_text()
    assert "--output-format\ntext\n--max-turns\n1\n--model\nhaiku-test\n" in recorded
    assert "[User]: why does the retry loop spin?" in recorded
    assert "key=unset" in recorded


@pytest.mark.asyncio
async def test_checkpoint_notes_earlier_messages(messages, tmp_path):
    for i in range(6):
        messages.append("s2", MessageRole.USER, f"question {i} " + "x" * 40)
    summarizer = _summarizer(messages, _recording_cli(tmp_path, "checkpoint"))

    result = await summarizer.checkpoint("s2", recent_message_count=4)

    assert result == "checkpoint"
    recorded = (tmp_path / "args.txt").read_text()
    assert "[Earlier: 2 messages, ~" in recorded
    assert "question 0" not in recorded
    assert "question 5" in recorded


@pytest.mark.asyncio
async def test_empty_session_skips_cli(messages, tmp_path):
    summarizer = _summarizer(messages, _recording_cli(tmp_path))

    assert await summarizer.summarize("nobody") is None
    assert await summarizer.checkpoint("nobody") is None
    assert not (tmp_path / "args.txt").exists()


@pytest.mark.asyncio
async def test_failures_return_none(messages, session, tmp_path):
    failing = _summarizer(messages, _fake_cli(tmp_path, "echo partial; exit 3\n"))
    missing = _summarizer(messages, str(tmp_path / "no-such-cli"))

    assert await failing.summarize(session) is None
    assert await missing.summarize(session) is None


@pytest.mark.asyncio
async def test_empty_output_returns_none(messages, session, tmp_path):
    silent = _summarizer(messages, _fake_cli(tmp_path, "echo '   '\n"))

    assert await silent.summarize(session, SummaryStyle.DIGEST) is None


@pytest.mark.asyncio
async def test_slow_cli_times_out(messages, session, tmp_path):
    slow = _summarizer(messages, _fake_cli(tmp_path, "exec sleep 30\n"), timeout=0.3)

    assert await slow.summarize(session) is None
