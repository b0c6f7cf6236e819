"""Tests for ConversationService send orchestration."""
from __future__ import annotations

import pytest

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.conversation import ConversationService
from grove.engine.errors import BranchBusyError, BranchInvariantError
from grove.engine.providers.registry import ProviderRouter
from grove.engine.session_rotator import SessionRotator, seed_message
from grove.engine.summarizer import SummaryStyle
from grove.shared.models.message import MessageRole
from grove.shared.models.tree import BranchStatus
from grove.shared.services.event_log import EventLog
from grove.shared.services.session_continuity import SessionContinuityMap

from conftest import ScriptedProvider


@pytest.fixture
def event_log(db):
    return EventLog(db)


def _service(trees, messages, event_log, *providers, default_model="default-model"):
    router = ProviderRouter()
    for provider in providers:
        router.register(provider)
    return ConversationService(
        trees, messages, router, event_log=event_log, default_model=default_model,
    )


async def _collect(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_send_persists_user_and_assistant_messages(trees, messages, event_log):
    provider = ScriptedProvider(events=[
        TextEvent(text="Hello"),
        ToolStartEvent(name="read_file"),
        ToolEndEvent(name="read_file", result="ok"),
        TextEvent(text=", world"),
        DoneEvent(),
    ])
    service = _service(trees, messages, event_log, provider)
    tree, branch = service.start_conversation(
        "hi there", project="api", working_directory="/work",
    )

    events = await _collect(service.send(branch.id, "hi there"))

    assert isinstance(events[-1], DoneEvent)
    history = messages.get_messages(branch.session_id)
    assert [(m.role, m.content) for m in history] == [
        (MessageRole.USER, "hi there"),
        (MessageRole.ASSISTANT, "Hello, world"),
    ]
    context = provider.contexts[0]
    assert context.session_id == branch.session_id
    assert context.branch_id == branch.id
    assert context.is_new_session is True
    assert context.user_message_id == history[0].id
    assert context.working_directory == "/work"
    assert context.project == "api"
    assert context.model == "default-model"
    assert context.parent_session_id is None

    types = [e["event_type"] for e in reversed(event_log.recent_events(session_id=branch.session_id))]
    assert types == ["user_message", "tool_start", "tool_end", "assistant_message"]
    assert tree.name == "hi there"


@pytest.mark.asyncio
async def test_second_send_is_not_new_session(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="a"), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q1", context_snapshot="Context: x")

    await _collect(service.send(branch.id, "q1"))
    await _collect(service.send(branch.id, "q2"))

    assert [c.is_new_session for c in provider.contexts] == [True, False]
    assert messages.count(branch.session_id) == 5


@pytest.mark.asyncio
async def test_concurrent_send_on_same_branch_is_rejected(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="slow"), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")
    _other_tree, other = service.start_conversation("elsewhere")

    first = service.send(branch.id, "q")
    assert await first.__anext__() == TextEvent(text="slow")
    assert service.is_busy(branch.id)

    with pytest.raises(BranchBusyError):
        await _collect(service.send(branch.id, "again"))
    # Another branch is unaffected.
    assert isinstance((await _collect(service.send(other.id, "fine")))[-1], DoneEvent)

    rest = [event async for event in first]
    assert rest == [DoneEvent()]
    assert not service.is_busy(branch.id)
    assert [m.content for m in messages.get_messages(branch.session_id)] == ["q", "slow"]


@pytest.mark.asyncio
async def test_error_keeps_user_message_only(trees, messages, event_log):
    provider = ScriptedProvider(events=[
        TextEvent(text="partial"),
        ErrorEvent(message="rate limited", kind=ErrorKind.SERVER),
    ])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")

    events = await _collect(service.send(branch.id, "q"))

    assert events[-1].kind is ErrorKind.SERVER
    assert [m.role for m in messages.get_messages(branch.session_id)] == [MessageRole.USER]
    errors = event_log.recent_events(event_type="error")
    assert errors[0]["detail"] == {"kind": "server", "message": "rate limited"}


@pytest.mark.asyncio
async def test_cancelled_send_stores_no_reply(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="half"), CancelledEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")

    events = await _collect(service.send(branch.id, "q"))

    assert isinstance(events[-1], CancelledEvent)
    assert messages.count(branch.session_id) == 1


@pytest.mark.asyncio
async def test_events_after_terminal_are_dropped(trees, messages, event_log):
    provider = ScriptedProvider(events=[DoneEvent(), TextEvent(text="late")])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")

    events = await _collect(service.send(branch.id, "q"))

    assert events == [DoneEvent()]


@pytest.mark.asyncio
async def test_edit_then_reply_to_trailing_user_message(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="v1 answer"), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("hello")
    await _collect(service.send(branch.id, "hello"))
    original = messages.get_messages(branch.session_id)[0]

    edited = service.edit_message(branch.id, original.id, "hello v2")
    provider.events = [TextEvent(text="v2 answer"), DoneEvent()]
    await _collect(service.send(edited.id))

    assert [m.content for m in messages.get_messages(edited.session_id)] == ["hello v2", "v2 answer"]
    assert [m.content for m in messages.get_messages(branch.session_id)] == ["hello", "v1 answer"]
    context = provider.contexts[-1]
    assert context.message == "hello v2"
    assert context.parent_session_id == branch.session_id
    assert context.is_new_session is True
    forks = event_log.recent_events(event_type="branch_fork")
    assert forks[0]["branch_id"] == edited.id


@pytest.mark.asyncio
async def test_reply_without_pending_user_message_is_invariant_error(trees, messages, event_log):
    service = _service(trees, messages, event_log, ScriptedProvider())
    _tree, branch = service.start_conversation("q")

    with pytest.raises(BranchInvariantError):
        await _collect(service.send(branch.id))


@pytest.mark.asyncio
async def test_no_provider_is_domain_error(trees, messages, event_log):
    service = _service(trees, messages, event_log)
    _tree, branch = service.start_conversation("q")

    events = await _collect(service.send(branch.id, "q"))

    assert events[-1].kind is ErrorKind.DOMAIN


@pytest.mark.asyncio
async def test_fork_at_and_cancel_route_by_session(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="a"), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")
    await _collect(service.send(branch.id, "q"))
    answer = messages.get_messages(branch.session_id)[-1]

    child = service.fork_at(branch.id, answer.id, title="alt")
    await service.cancel(child.id)

    assert child.title == "alt"
    assert provider.cancelled == [child.session_id]


@pytest.mark.asyncio
async def test_open_branch_warms_the_chosen_provider(trees, messages, event_log):
    active = ScriptedProvider("active", events=[TextEvent(text="a"), DoneEvent()])
    other = ScriptedProvider("other")
    service = _service(trees, messages, event_log, active, other)
    _tree, branch = service.start_conversation("q")
    await _collect(service.send(branch.id, "q"))
    child = service.fork_at(branch.id, messages.get_messages(branch.session_id)[-1].id)

    history = await service.open_branch(child.id)
    await service.open_branch(branch.id, provider_id="other")

    assert [m.content for m in history] == ["q", "a"]
    assert active.warmed == [child.session_id]
    assert other.warmed == [branch.session_id]


# ── Context rotation ──


class FakeSummarizer:
    def __init__(self, summary: str | None = "did the thing", digest: str | None = "digest"):
        self.summary = summary
        self.digest = digest
        self.calls: list[tuple[str, SummaryStyle]] = []

    async def summarize(self, session_id, style=SummaryStyle.BRANCH_COMPLETE):
        self.calls.append((session_id, style))
        return self.digest if style is SummaryStyle.DIGEST else self.summary

    async def checkpoint(self, session_id):
        return "checkpoint text"


@pytest.mark.asyncio
async def test_send_under_pressure_seeds_fresh_session(trees, messages, event_log, db):
    provider = ScriptedProvider(events=[TextEvent(text="a"), DoneEvent()])
    continuity = SessionContinuityMap(db)
    rotator = SessionRotator(db, messages, continuity, FakeSummarizer(), event_log=event_log)
    router = ProviderRouter()
    router.register(provider)
    service = ConversationService(trees, messages, router, event_log=event_log, rotator=rotator)
    _tree, branch = service.start_conversation("q1")
    await _collect(service.send(branch.id, "q1"))
    continuity.bind(branch.session_id, provider.identifier, "cli-session")
    for _ in range(300):
        event_log.record("tool_start", session_id=branch.session_id)

    await _collect(service.send(branch.id, "q2"))

    context = provider.contexts[-1]
    assert context.fresh_context is True
    assert context.message == seed_message("checkpoint text", "q2")
    assert provider.contexts[0].fresh_context is False
    assert messages.get_messages(branch.session_id)[-2].content == "q2"
    assert continuity.get(branch.session_id, provider.identifier) is None
    assert rotator.rotation_count(branch.session_id) == 1


# ── Branch lifecycle ──


@pytest.mark.asyncio
async def test_complete_branch_stores_summary_and_absorbs_digest(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="answer"), DoneEvent()])
    summarizer = FakeSummarizer()
    router = ProviderRouter()
    router.register(provider)
    service = ConversationService(
        trees, messages, router, event_log=event_log, summarizer=summarizer,
    )
    _tree, root = service.start_conversation("q")
    await _collect(service.send(root.id, "q"))
    child = service.fork_at(root.id, messages.get_messages(root.session_id)[-1].id, title="spike")

    completed = await service.complete_branch(child.id, absorb_into_parent=True)

    assert completed.status == BranchStatus.COMPLETED
    assert completed.summary == "did the thing"
    assert [style for _sid, style in summarizer.calls] == [
        SummaryStyle.BRANCH_COMPLETE, SummaryStyle.DIGEST,
    ]
    last = messages.get_messages(root.session_id)[-1]
    assert last.role is MessageRole.SYSTEM
    assert last.content == "[Branch 'spike' completed]\ndigest"
    done = event_log.recent_events(event_type="branch_complete")[0]
    assert done["detail"] == {"summary_chars": len("did the thing"), "absorbed": True}


@pytest.mark.asyncio
async def test_complete_branch_falls_back_to_last_reply(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="r" * 300), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    _tree, branch = service.start_conversation("q")
    await _collect(service.send(branch.id, "q"))

    completed = await service.complete_branch(branch.id, absorb_into_parent=True)

    assert completed.summary == "r" * 200
    assert messages.count(branch.session_id) == 2


@pytest.mark.asyncio
async def test_delete_tree_forgets_provider_state(trees, messages, event_log):
    provider = ScriptedProvider(events=[TextEvent(text="a"), DoneEvent()])
    service = _service(trees, messages, event_log, provider)
    tree, branch = service.start_conversation("q", project="p")
    await _collect(service.send(branch.id, "q"))
    child = service.fork_at(branch.id, messages.get_messages(branch.session_id)[-1].id)
    _other, other = service.start_conversation("q", project="p")

    deleted = service.delete_tree(tree.id)

    assert set(deleted) == {branch.session_id, child.session_id}
    assert set(provider.forgotten) == set(deleted)
    assert event_log.recent_events(session_id=branch.session_id) == []

    assert service.delete_project("p") == [other.session_id]
    assert provider.forgotten[-1] == other.session_id
