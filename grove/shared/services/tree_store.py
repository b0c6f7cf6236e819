"""Tree and branch persistence.

Owns the session side effect of branch creation: every branch gets a
fresh session row in the same transaction, so a branch never exists
without its session. Forks copy a prefix of the parent session into the
new one inside that same transaction.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from grove.engine.errors import (
    BranchInvariantError,
    BranchNotFoundError,
    MessageNotFoundError,
    TreeNotFoundError,
)
from grove.shared.models.message import MessageRole
from grove.shared.models.tree import (
    Branch,
    BranchStatus,
    BranchType,
    Tree,
    build_branch_tree,
)
from grove.shared.services.database import Database, utc_now_iso
from grove.shared.services.message_store import copy_messages, insert_message

logger = logging.getLogger(__name__)

# Guards the ancestor walk against corrupt rows that form a cycle.
_MAX_DEPTH = 1000

# Per-session rows removed with their tree.
_SESSION_TABLES = (
    "api_state", "messages", "events", "token_usage", "context_checkpoints",
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _row_to_branch(row: sqlite3.Row) -> Branch:
    return Branch(
        id=row["id"],
        tree_id=row["tree_id"],
        session_id=row["session_id"],
        parent_branch_id=row["parent_branch_id"],
        fork_from_message_id=row["fork_from_message_id"],
        branch_type=BranchType(row["branch_type"]),
        status=BranchStatus(row["status"]),
        title=row["title"],
        summary=row["summary"],
        model=row["model"],
        context_snapshot=row["context_snapshot"],
        collapsed=bool(row["collapsed"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_tree(row: sqlite3.Row) -> Tree:
    keys = row.keys()
    return Tree(
        id=row["id"],
        name=row["name"],
        project=row["project"],
        working_directory=row["working_directory"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        archived=bool(row["archived"]),
        message_count=int(row["message_count"]) if "message_count" in keys else 0,
    )


class TreeStore:
    """CRUD over trees and branches."""

    def __init__(self, db: Database):
        self._db = db

    # ── Trees ──

    def create_tree(
        self,
        name: str,
        project: str | None = None,
        working_directory: str | None = None,
    ) -> Tree:
        now = utc_now_iso()
        tree = Tree(
            id=_new_id(),
            name=name,
            project=project,
            working_directory=working_directory,
            created_at=now,
            updated_at=now,
        )
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO trees(id, name, project, working_directory, created_at, updated_at, archived) "
                "VALUES (?, ?, ?, ?, ?, ?, 0)",
                (tree.id, name, project, working_directory, now, now),
            )
        logger.info("Tree created id=%s name=%r project=%s", tree.id, name, project)
        return tree

    def get_tree(self, tree_id: str) -> Tree:
        """Load a tree and rebuild its branch forest."""
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM trees WHERE id = ?", (tree_id,)).fetchone()
            if row is None:
                raise TreeNotFoundError(tree_id)
            branch_rows = conn.execute(
                "SELECT * FROM branches WHERE tree_id = ? ORDER BY created_at ASC, rowid ASC",
                (tree_id,),
            ).fetchall()
        tree = _row_to_tree(row)
        tree.branches = build_branch_tree([_row_to_branch(r) for r in branch_rows])
        return tree

    def list_trees(
        self,
        include_archived: bool = False,
        project: str | None = None,
    ) -> list[Tree]:
        """Tree summaries (no branches), most recently updated first."""
        clauses: list[str] = []
        params: list[Any] = []
        if not include_archived:
            clauses.append("t.archived = 0")
        if project is not None:
            clauses.append("t.project = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT t.*,
                       (SELECT COUNT(*) FROM messages m
                          JOIN branches b ON b.session_id = m.session_id
                         WHERE b.tree_id = t.id) AS message_count
                FROM trees t
                {where}
                ORDER BY t.updated_at DESC
                """,
                params,
            ).fetchall()
        return [_row_to_tree(r) for r in rows]

    def update_tree_timestamp(self, tree_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE trees SET updated_at = ? WHERE id = ?", (utc_now_iso(), tree_id),
            )

    def archive_tree(self, tree_id: str) -> None:
        """Hide a tree from listings and archive all its branches."""
        now = utc_now_iso()
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE trees SET archived = 1, updated_at = ? WHERE id = ?", (now, tree_id),
            )
            if cur.rowcount == 0:
                raise TreeNotFoundError(tree_id)
            conn.execute(
                "UPDATE branches SET status = 'archived', updated_at = ? WHERE tree_id = ?",
                (now, tree_id),
            )
        logger.info("Tree archived id=%s", tree_id)

    def delete_tree(self, tree_id: str) -> list[str]:
        """Delete a tree with everything recorded for its sessions.

        Returns the deleted session ids so callers can drop what they
        cache per session.
        """
        with self._db.transaction() as conn:
            if conn.execute("SELECT 1 FROM trees WHERE id = ?", (tree_id,)).fetchone() is None:
                raise TreeNotFoundError(tree_id)
            session_ids = self._delete_trees_on(conn, [tree_id])
        logger.info("Tree deleted id=%s sessions=%d", tree_id, len(session_ids))
        return session_ids

    def archive_project(self, project: str) -> int:
        """Archive every tree labelled *project*. Returns the tree count."""
        now = utc_now_iso()
        with self._db.transaction() as conn:
            tree_ids = [
                r["id"] for r in conn.execute(
                    "SELECT id FROM trees WHERE project = ? AND archived = 0", (project,),
                )
            ]
            for tree_id in tree_ids:
                conn.execute(
                    "UPDATE trees SET archived = 1, updated_at = ? WHERE id = ?", (now, tree_id),
                )
                conn.execute(
                    "UPDATE branches SET status = 'archived', updated_at = ? WHERE tree_id = ?",
                    (now, tree_id),
                )
        logger.info("Project archived project=%r trees=%d", project, len(tree_ids))
        return len(tree_ids)

    def delete_project(self, project: str) -> list[str]:
        """Delete every tree labelled *project*. Returns the deleted session ids."""
        with self._db.transaction() as conn:
            tree_ids = [
                r["id"] for r in conn.execute("SELECT id FROM trees WHERE project = ?", (project,))
            ]
            session_ids = self._delete_trees_on(conn, tree_ids)
        logger.info("Project deleted project=%r trees=%d", project, len(tree_ids))
        return session_ids

    @staticmethod
    def _delete_trees_on(conn: sqlite3.Connection, tree_ids: list[str]) -> list[str]:
        if not tree_ids:
            return []
        tree_marks = ",".join("?" for _ in tree_ids)
        session_ids = [
            r["session_id"] for r in conn.execute(
                f"SELECT session_id FROM branches WHERE tree_id IN ({tree_marks})", tree_ids,
            )
        ]
        if session_ids:
            marks = ",".join("?" for _ in session_ids)
            conn.execute(
                f"DELETE FROM provider_sessions WHERE internal_session_id IN ({marks})",
                session_ids,
            )
            for table in _SESSION_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE session_id IN ({marks})", session_ids)
            conn.execute(f"DELETE FROM sessions WHERE id IN ({marks})", session_ids)
        conn.execute(f"DELETE FROM branches WHERE tree_id IN ({tree_marks})", tree_ids)
        conn.execute(f"DELETE FROM trees WHERE id IN ({tree_marks})", tree_ids)
        return session_ids

    # ── Branches ──

    def create_branch(
        self,
        tree_id: str,
        parent_branch_id: str | None = None,
        fork_from_message_id: int | None = None,
        branch_type: BranchType | str = BranchType.CONVERSATION,
        title: str | None = None,
        model: str | None = None,
        context_snapshot: str | None = None,
        working_directory: str | None = None,
        *,
        session_id: str | None = None,
    ) -> Branch:
        """Create a branch and its session atomically.

        A context snapshot becomes the session's first (system) message.
        *session_id* lets callers adopt an externally chosen id; it must be
        non-empty and unused.
        """
        with self._db.transaction() as conn:
            branch = self._create_branch_on(
                conn,
                tree_id=tree_id,
                parent_branch_id=parent_branch_id,
                fork_from_message_id=fork_from_message_id,
                branch_type=BranchType(branch_type),
                title=title,
                model=model,
                context_snapshot=context_snapshot,
                working_directory=working_directory,
                session_id=session_id,
            )
            if context_snapshot:
                insert_message(conn, branch.session_id, MessageRole.SYSTEM, context_snapshot)
        logger.info(
            "Branch created id=%s tree=%s parent=%s session=%s",
            branch.id, tree_id, parent_branch_id, branch.session_id,
        )
        return branch

    def _create_branch_on(
        self,
        conn: sqlite3.Connection,
        *,
        tree_id: str,
        parent_branch_id: str | None,
        fork_from_message_id: int | None,
        branch_type: BranchType,
        title: str | None,
        model: str | None,
        context_snapshot: str | None,
        working_directory: str | None,
        session_id: str | None,
    ) -> Branch:
        tree_row = conn.execute(
            "SELECT working_directory FROM trees WHERE id = ?", (tree_id,),
        ).fetchone()
        if tree_row is None:
            raise TreeNotFoundError(tree_id)
        if parent_branch_id is not None:
            parent = conn.execute(
                "SELECT tree_id FROM branches WHERE id = ?", (parent_branch_id,),
            ).fetchone()
            if parent is None:
                raise BranchNotFoundError(parent_branch_id)
            if parent["tree_id"] != tree_id:
                raise BranchInvariantError(
                    None,
                    f"parent {parent_branch_id} belongs to tree {parent['tree_id']}, not {tree_id}",
                )
        if session_id is None:
            session_id = _new_id()
        if not session_id:
            raise BranchInvariantError(None, "session id must not be empty")
        if conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone():
            raise BranchInvariantError(None, f"session {session_id} is already in use")

        now = utc_now_iso()
        branch = Branch(
            id=_new_id(),
            tree_id=tree_id,
            session_id=session_id,
            parent_branch_id=parent_branch_id,
            fork_from_message_id=fork_from_message_id,
            branch_type=branch_type,
            title=title,
            model=model,
            context_snapshot=context_snapshot,
            created_at=now,
            updated_at=now,
        )
        conn.execute(
            "INSERT INTO sessions(id, working_directory, description, started_at) VALUES (?, ?, ?, ?)",
            (session_id, working_directory or tree_row["working_directory"], title, now),
        )
        conn.execute(
            """
            INSERT INTO branches(
                id, tree_id, session_id, parent_branch_id, fork_from_message_id,
                branch_type, status, title, summary, model, context_snapshot,
                collapsed, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, 0, ?, ?)
            """,
            (
                branch.id, tree_id, session_id, parent_branch_id, fork_from_message_id,
                branch_type.value, branch.status.value, title, model, context_snapshot,
                now, now,
            ),
        )
        conn.execute("UPDATE trees SET updated_at = ? WHERE id = ?", (now, tree_id))
        return branch

    def get_branch(self, branch_id: str) -> Branch:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM branches WHERE id = ?", (branch_id,)).fetchone()
        if row is None:
            raise BranchNotFoundError(branch_id)
        return _row_to_branch(row)

    def get_branch_by_session(self, session_id: str) -> Branch | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM branches WHERE session_id = ?", (session_id,),
            ).fetchone()
        return _row_to_branch(row) if row else None

    def branches_from_message(self, message_id: int) -> list[Branch]:
        """Branches forked at *message_id*, oldest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM branches WHERE fork_from_message_id = ? ORDER BY created_at ASC",
                (message_id,),
            ).fetchall()
        return [_row_to_branch(r) for r in rows]

    def update_branch(
        self,
        branch_id: str,
        *,
        status: BranchStatus | str | None = None,
        summary: str | None = None,
        title: str | None = None,
        collapsed: bool | None = None,
    ) -> Branch:
        sets: list[str] = []
        params: list[Any] = []
        if status is not None:
            sets.append("status = ?")
            params.append(BranchStatus(status).value)
        if summary is not None:
            sets.append("summary = ?")
            params.append(summary)
        if title is not None:
            sets.append("title = ?")
            params.append(title)
        if collapsed is not None:
            sets.append("collapsed = ?")
            params.append(1 if collapsed else 0)
        if sets:
            sets.append("updated_at = ?")
            params.append(utc_now_iso())
            with self._db.transaction() as conn:
                cur = conn.execute(
                    f"UPDATE branches SET {', '.join(sets)} WHERE id = ?", [*params, branch_id],
                )
                if cur.rowcount == 0:
                    raise BranchNotFoundError(branch_id)
        return self.get_branch(branch_id)

    def branch_path(self, branch_id: str) -> list[Branch]:
        """Ancestor chain from the root down to *branch_id* itself."""
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                WITH RECURSIVE ancestors(id, parent_branch_id, depth) AS (
                    SELECT id, parent_branch_id, 0 FROM branches WHERE id = ?
                    UNION ALL
                    SELECT b.id, b.parent_branch_id, a.depth + 1
                    FROM branches b JOIN ancestors a ON b.id = a.parent_branch_id
                    WHERE a.depth < ?
                )
                SELECT b.* FROM ancestors a JOIN branches b ON b.id = a.id
                ORDER BY a.depth DESC
                """,
                (branch_id, _MAX_DEPTH),
            ).fetchall()
        if not rows:
            raise BranchNotFoundError(branch_id)
        return [_row_to_branch(r) for r in rows]

    def get_siblings(self, branch_id: str) -> list[Branch]:
        """Branches sharing this branch's parent (or the tree's other
        roots when parentless), excluding the branch itself."""
        branch = self.get_branch(branch_id)
        with self._db.connect() as conn:
            if branch.parent_branch_id is None:
                rows = conn.execute(
                    "SELECT * FROM branches WHERE tree_id = ? AND parent_branch_id IS NULL "
                    "AND id != ? ORDER BY created_at ASC, rowid ASC",
                    (branch.tree_id, branch_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM branches WHERE parent_branch_id = ? "
                    "AND id != ? ORDER BY created_at ASC, rowid ASC",
                    (branch.parent_branch_id, branch_id),
                ).fetchall()
        return [_row_to_branch(r) for r in rows]

    # ── Forks ──

    def fork_branch(
        self,
        branch_id: str,
        message_id: int,
        title: str | None = None,
        branch_type: BranchType | str | None = None,
    ) -> Branch:
        """New child branch whose history is the parent's up to and
        including *message_id*."""
        parent = self.get_branch(branch_id)
        with self._db.transaction() as conn:
            self._require_message(conn, parent.session_id, message_id)
            branch = self._create_branch_on(
                conn,
                tree_id=parent.tree_id,
                parent_branch_id=parent.id,
                fork_from_message_id=message_id,
                branch_type=BranchType(branch_type) if branch_type else parent.branch_type,
                title=title or parent.title,
                model=parent.model,
                context_snapshot=None,
                working_directory=None,
                session_id=None,
            )
            copied = copy_messages(
                conn, parent.session_id, branch.session_id, through_message_id=message_id,
            )
        logger.info(
            "Branch forked id=%s from=%s at_message=%d copied=%d",
            branch.id, parent.id, message_id, copied,
        )
        return branch

    def fork_on_edit(
        self,
        branch_id: str,
        message_id: int,
        new_content: str,
        title: str | None = None,
    ) -> Branch:
        """Model an edit of a user message as a new child branch.

        The new session holds the parent's history strictly before the
        edited message, then *new_content* as a user message. The fork
        point is the message preceding the edited one, or None when the
        edited message opens the session. The parent is left untouched.
        """
        parent = self.get_branch(branch_id)
        with self._db.transaction() as conn:
            row = self._require_message(conn, parent.session_id, message_id)
            if row["role"] != MessageRole.USER.value:
                raise BranchInvariantError(
                    branch_id, f"message {message_id} is a {row['role']} message, not user",
                )
            history = conn.execute(
                "SELECT id FROM messages WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
                (parent.session_id,),
            ).fetchall()
            ids = [r["id"] for r in history]
            position = ids.index(message_id)
            fork_point = ids[position - 1] if position > 0 else None
            branch = self._create_branch_on(
                conn,
                tree_id=parent.tree_id,
                parent_branch_id=parent.id,
                fork_from_message_id=fork_point,
                branch_type=parent.branch_type,
                title=title or _title_from(new_content),
                model=parent.model,
                context_snapshot=None,
                working_directory=None,
                session_id=None,
            )
            copy_messages(
                conn, parent.session_id, branch.session_id, before_message_id=message_id,
            )
            insert_message(conn, branch.session_id, MessageRole.USER, new_content)
        logger.info(
            "Branch forked on edit id=%s from=%s edited=%d fork_point=%s",
            branch.id, parent.id, message_id, fork_point,
        )
        return branch

    @staticmethod
    def _require_message(
        conn: sqlite3.Connection, session_id: str, message_id: int,
    ) -> sqlite3.Row:
        row = conn.execute(
            "SELECT id, role FROM messages WHERE id = ? AND session_id = ?",
            (message_id, session_id),
        ).fetchone()
        if row is None:
            raise MessageNotFoundError(message_id, session_id)
        return row


def _title_from(content: str, limit: int = 60) -> str:
    line = content.strip().splitlines()[0] if content.strip() else ""
    return line[:limit]
