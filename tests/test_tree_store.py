"""Tests for TreeStore: branch creation, forks, traversal and deletion.

Covers:
- Atomic branch + session creation
- Edit-forks and message forks copying the right history prefix
- branch_path / get_siblings ordering
- Tree delete cascade and project-wide archive/delete
"""
from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from grove.adapters.events import TokenUsage
from grove.engine.errors import (
    BranchInvariantError,
    BranchNotFoundError,
    MessageNotFoundError,
    TreeNotFoundError,
)
from grove.engine.providers.conversation_state import ConversationStateManager
from grove.shared.models.message import MessageRole
from grove.shared.models.tree import BranchStatus, BranchType
from grove.shared.services.event_log import EventLog
from grove.shared.services.session_continuity import SessionContinuityMap


def _count(db, sql: str, *params) -> int:
    with db.connect() as conn:
        return conn.execute(sql, params).fetchone()[0]


# ── Creation ──


def test_create_branch_creates_session_and_snapshot(trees, messages, db):
    tree = trees.create_tree("demo", project="api", working_directory="/work")
    branch = trees.create_branch(
        tree.id,
        branch_type=BranchType.EXPLORATION,
        title="Root",
        context_snapshot="Context: the retry loop",
    )

    assert branch.session_id
    assert _count(db, "SELECT COUNT(*) FROM sessions WHERE id = ?", branch.session_id) == 1
    history = messages.get_messages(branch.session_id)
    assert [(m.role, m.content) for m in history] == [
        (MessageRole.SYSTEM, "Context: the retry loop"),
    ]
    with db.connect() as conn:
        row = conn.execute(
            "SELECT working_directory FROM sessions WHERE id = ?", (branch.session_id,),
        ).fetchone()
    assert row["working_directory"] == "/work"


def test_create_branch_rejects_reused_session_id(trees, db):
    tree = trees.create_tree("demo")
    first = trees.create_branch(tree.id, session_id="shared-session")

    with pytest.raises(BranchInvariantError):
        trees.create_branch(tree.id, session_id=first.session_id)

    assert _count(db, "SELECT COUNT(*) FROM branches") == 1


def test_create_branch_rejects_empty_session_id(trees, db):
    tree = trees.create_tree("demo")

    with pytest.raises(BranchInvariantError):
        trees.create_branch(tree.id, session_id="")

    assert _count(db, "SELECT COUNT(*) FROM branches") == 0
    assert _count(db, "SELECT COUNT(*) FROM sessions") == 0


def test_create_branch_is_all_or_nothing(trees, db):
    tree = trees.create_tree("demo")

    with patch(
        "grove.shared.services.tree_store.insert_message",
        side_effect=sqlite3.OperationalError("disk I/O error"),
    ):
        with pytest.raises(sqlite3.OperationalError):
            trees.create_branch(tree.id, context_snapshot="snapshot")

    assert _count(db, "SELECT COUNT(*) FROM branches") == 0
    assert _count(db, "SELECT COUNT(*) FROM sessions") == 0


def test_parent_must_be_in_same_tree(trees):
    tree_a = trees.create_tree("a")
    tree_b = trees.create_tree("b")
    parent = trees.create_branch(tree_a.id)

    with pytest.raises(BranchInvariantError):
        trees.create_branch(tree_b.id, parent_branch_id=parent.id)


def test_create_branch_unknown_tree_or_parent(trees):
    with pytest.raises(TreeNotFoundError):
        trees.create_branch("no-such-tree")
    tree = trees.create_tree("demo")
    with pytest.raises(BranchNotFoundError):
        trees.create_branch(tree.id, parent_branch_id="no-such-branch")


# ── Forks ──


def test_edit_fork_example_hello_v2(trees, messages):
    tree = trees.create_tree("demo")
    b1 = trees.create_branch(tree.id, branch_type=BranchType.CONVERSATION)
    hello = messages.append(b1.session_id, MessageRole.USER, "hello")

    b2 = trees.fork_on_edit(b1.id, hello.id, "hello v2")

    assert b2.parent_branch_id == b1.id
    # Nothing precedes the edited message, so there is no fork point.
    assert b2.fork_from_message_id is None
    assert [(m.role, m.content) for m in messages.get_messages(b2.session_id)] == [
        (MessageRole.USER, "hello v2"),
    ]
    assert [m.content for m in messages.get_messages(b1.session_id)] == ["hello"]


def test_edit_fork_copies_prefix_byte_identical(trees, messages):
    tree = trees.create_tree("demo")
    b1 = trees.create_branch(tree.id)
    contents = ["q1", "a1", "q2 with ünïcode", "a2", "q3", "a3"]
    stored = []
    for index, content in enumerate(contents):
        role = MessageRole.USER if index % 2 == 0 else MessageRole.ASSISTANT
        stored.append(messages.append(b1.session_id, role, content))

    k = 4
    b2 = trees.fork_on_edit(b1.id, stored[k].id, "q3 edited")
    source = messages.get_messages(b1.session_id)
    forked = messages.get_messages(b2.session_id)

    assert len(forked) == k + 1
    assert [(m.role, m.content, m.timestamp) for m in forked[:k]] == [
        (m.role, m.content, m.timestamp) for m in source[:k]
    ]
    assert (forked[k].role, forked[k].content) == (MessageRole.USER, "q3 edited")
    assert b2.fork_from_message_id == stored[k - 1].id
    assert b2.title == "q3 edited"


def test_edit_fork_rejects_assistant_message(trees, messages):
    tree = trees.create_tree("demo")
    b1 = trees.create_branch(tree.id)
    messages.append(b1.session_id, MessageRole.USER, "q")
    answer = messages.append(b1.session_id, MessageRole.ASSISTANT, "a")

    with pytest.raises(BranchInvariantError):
        trees.fork_on_edit(b1.id, answer.id, "rewritten")


def test_fork_branch_copies_through_message(trees, messages):
    tree = trees.create_tree("demo")
    b1 = trees.create_branch(tree.id, title="main", model="claude-sonnet-4-5")
    q1 = messages.append(b1.session_id, MessageRole.USER, "q1")
    a1 = messages.append(b1.session_id, MessageRole.ASSISTANT, "a1")
    messages.append(b1.session_id, MessageRole.USER, "q2")

    child = trees.fork_branch(b1.id, a1.id, title="alternative")

    assert child.fork_from_message_id == a1.id
    assert child.model == "claude-sonnet-4-5"
    assert [m.content for m in messages.get_messages(child.session_id)] == ["q1", "a1"]
    assert [b.id for b in trees.branches_from_message(a1.id)] == [child.id]
    assert messages.get_message(a1.id).has_branches == 1
    assert messages.get_message(q1.id).has_branches == 0


def test_fork_branch_rejects_message_from_other_session(trees, messages):
    tree = trees.create_tree("demo")
    b1 = trees.create_branch(tree.id)
    b2 = trees.create_branch(tree.id)
    foreign = messages.append(b2.session_id, MessageRole.USER, "elsewhere")

    with pytest.raises(MessageNotFoundError):
        trees.fork_branch(b1.id, foreign.id)


# ── Traversal ──


def test_branch_path_and_siblings(trees, messages):
    tree = trees.create_tree("demo")
    root = trees.create_branch(tree.id, title="root")
    msg = messages.append(root.session_id, MessageRole.USER, "q")
    left = trees.fork_branch(root.id, msg.id, title="left")
    right = trees.fork_branch(root.id, msg.id, title="right")
    left_msg = messages.get_messages(left.session_id)[0]
    deep = trees.fork_branch(left.id, left_msg.id, title="deep")

    assert [b.id for b in trees.branch_path(deep.id)] == [root.id, left.id, deep.id]
    assert [b.id for b in trees.branch_path(root.id)] == [root.id]
    assert [b.id for b in trees.get_siblings(left.id)] == [right.id]
    assert trees.get_siblings(deep.id) == []

    other_root = trees.create_branch(tree.id, title="second root")
    assert [b.id for b in trees.get_siblings(root.id)] == [other_root.id]

    loaded = trees.get_tree(tree.id)
    assert [b.id for b in loaded.branches] == [root.id, other_root.id]
    assert [c.id for c in loaded.branches[0].children] == [left.id, right.id]
    assert loaded.find_branch(deep.id) is not None


def test_branch_path_unknown_branch(trees):
    with pytest.raises(BranchNotFoundError):
        trees.branch_path("missing")


def test_update_branch_fields(trees):
    tree = trees.create_tree("demo")
    branch = trees.create_branch(tree.id)

    updated = trees.update_branch(
        branch.id, status=BranchStatus.COMPLETED, summary="done", collapsed=True,
    )

    assert updated.status == BranchStatus.COMPLETED
    assert updated.summary == "done"
    assert updated.collapsed is True


# ── Listing and deletion ──


def test_list_trees_counts_messages_and_hides_archived(trees, messages):
    first = trees.create_tree("first", project="api")
    second = trees.create_tree("second", project="web")
    branch = trees.create_branch(first.id)
    messages.append(branch.session_id, MessageRole.USER, "q")
    messages.append(branch.session_id, MessageRole.ASSISTANT, "a")

    listed = {t.id: t for t in trees.list_trees()}
    assert listed[first.id].message_count == 2
    assert listed[second.id].message_count == 0

    trees.archive_tree(second.id)
    assert [t.id for t in trees.list_trees()] == [first.id]
    assert {t.id for t in trees.list_trees(include_archived=True)} == {first.id, second.id}
    assert [t.id for t in trees.list_trees(project="api")] == [first.id]


def test_delete_tree_cascades(trees, messages, db):
    tree = trees.create_tree("demo")
    root = trees.create_branch(tree.id)
    msg = messages.append(root.session_id, MessageRole.USER, "q")
    child = trees.fork_branch(root.id, msg.id)
    messages.append(child.session_id, MessageRole.ASSISTANT, "a")
    SessionContinuityMap(db).bind(root.session_id, "claude-code", "cli-token")
    keep = trees.create_tree("keep")
    keep_branch = trees.create_branch(keep.id)
    messages.append(keep_branch.session_id, MessageRole.USER, "survives")
    events = EventLog(db)
    usage = ConversationStateManager(db)
    for session_id in (root.session_id, keep_branch.session_id):
        events.record("user_message", session_id=session_id)
        usage.record_usage(session_id, "anthropic-api", "m", TokenUsage(input_tokens=3))

    deleted = trees.delete_tree(tree.id)

    assert set(deleted) == {root.session_id, child.session_id}

    with pytest.raises(TreeNotFoundError):
        trees.get_tree(tree.id)
    for session_id in (root.session_id, child.session_id):
        assert _count(db, "SELECT COUNT(*) FROM messages WHERE session_id = ?", session_id) == 0
        assert _count(db, "SELECT COUNT(*) FROM sessions WHERE id = ?", session_id) == 0
    assert _count(db, "SELECT COUNT(*) FROM branches WHERE tree_id = ?", tree.id) == 0
    assert _count(db, "SELECT COUNT(*) FROM events WHERE session_id = ?", root.session_id) == 0
    assert _count(db, "SELECT COUNT(*) FROM token_usage WHERE session_id = ?", root.session_id) == 0
    assert _count(db, "SELECT COUNT(*) FROM provider_sessions") == 0
    assert messages.count(keep_branch.session_id) == 1
    assert _count(db, "SELECT COUNT(*) FROM events") == 1
    assert usage.session_usage(keep_branch.session_id).input_tokens == 3

    with pytest.raises(TreeNotFoundError):
        trees.delete_tree(tree.id)


def test_archive_and_delete_project(trees, messages, db):
    a = trees.create_tree("a", project="proj")
    b = trees.create_tree("b", project="proj")
    other = trees.create_tree("c", project="other")
    branch = trees.create_branch(a.id)
    messages.append(branch.session_id, MessageRole.USER, "q")

    assert trees.archive_project("proj") == 2
    assert [t.id for t in trees.list_trees()] == [other.id]
    assert trees.get_branch(branch.id).status == BranchStatus.ARCHIVED

    assert trees.delete_project("proj") == [branch.session_id]
    assert {t.id for t in trees.list_trees(include_archived=True)} == {other.id}
    assert _count(db, "SELECT COUNT(*) FROM messages") == 0
    with pytest.raises(TreeNotFoundError):
        trees.get_tree(b.id)
