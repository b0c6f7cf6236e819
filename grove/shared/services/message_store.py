"""Durable message log per session.

Messages are append-only. A session's history is ordered by timestamp,
ties broken by the auto-increment id.
"""
from __future__ import annotations

import logging
import sqlite3

from grove.engine.errors import MessageNotFoundError
from grove.shared.models.message import Message, MessageRole
from grove.shared.services.database import Database, utc_now_iso

logger = logging.getLogger(__name__)

_ROLES = tuple(r.value for r in MessageRole)

_SELECT = """
    SELECT m.id, m.session_id, m.role, m.content, m.timestamp,
           (SELECT COUNT(*) FROM branches b
             WHERE b.fork_from_message_id = m.id) AS has_branches
    FROM messages m
"""


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=int(row["id"]),
        session_id=row["session_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        timestamp=row["timestamp"],
        has_branches=int(row["has_branches"] or 0),
    )


def insert_message(
    conn: sqlite3.Connection,
    session_id: str,
    role: MessageRole | str,
    content: str,
    timestamp: str | None = None,
) -> int:
    """Insert one message on an open connection and return its id."""
    role_value = MessageRole(role).value
    cur = conn.execute(
        "INSERT INTO messages(session_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
        (session_id, role_value, content, timestamp or utc_now_iso()),
    )
    return int(cur.lastrowid)


def copy_messages(
    conn: sqlite3.Connection,
    source_session_id: str,
    target_session_id: str,
    *,
    before_message_id: int | None = None,
    through_message_id: int | None = None,
) -> int:
    """Copy a prefix of one session's history into another.

    Copies every message strictly before *before_message_id*, or up to and
    including *through_message_id*, in history order. Original timestamps
    are kept so the copied prefix sorts identically. Returns the number of
    rows copied.
    """
    rows = conn.execute(
        "SELECT id, role, content, timestamp FROM messages "
        "WHERE session_id = ? ORDER BY timestamp ASC, id ASC",
        (source_session_id,),
    ).fetchall()
    copied = 0
    for row in rows:
        if before_message_id is not None and row["id"] == before_message_id:
            break
        if row["role"] not in _ROLES:
            continue
        conn.execute(
            "INSERT INTO messages(session_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
            (target_session_id, row["role"], row["content"], row["timestamp"]),
        )
        copied += 1
        if through_message_id is not None and row["id"] == through_message_id:
            break
    return copied


class MessageStore:
    """Append/read/search over the messages table."""

    def __init__(self, db: Database):
        self._db = db

    def append(
        self, session_id: str, role: MessageRole | str, content: str,
    ) -> Message:
        with self._db.transaction() as conn:
            message_id = insert_message(conn, session_id, role, content)
        message = self.get_message(message_id)
        logger.debug(
            "Message appended id=%d session=%s role=%s chars=%d",
            message.id, session_id, message.role.value, len(content),
        )
        return message

    def get_message(self, message_id: int) -> Message:
        with self._db.connect() as conn:
            row = conn.execute(_SELECT + " WHERE m.id = ?", (message_id,)).fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return _row_to_message(row)

    def get_messages(self, session_id: str, limit: int = 500) -> list[Message]:
        """First *limit* messages of the session, oldest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                _SELECT + " WHERE m.session_id = ? "
                "ORDER BY m.timestamp ASC, m.id ASC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def get_recent_messages(self, session_id: str, limit: int = 100) -> list[Message]:
        """Last *limit* messages of the session, oldest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                _SELECT + " WHERE m.session_id = ? "
                "ORDER BY m.timestamp DESC, m.id DESC LIMIT ?",
                (session_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_messages_up_to(self, session_id: str, message_id: int) -> list[Message]:
        """History up to and including *message_id*."""
        history = self.get_messages(session_id, limit=-1)
        for index, message in enumerate(history):
            if message.id == message_id:
                return history[: index + 1]
        raise MessageNotFoundError(message_id, session_id)

    def count(self, session_id: str) -> int:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE session_id = ?", (session_id,),
            ).fetchone()
        return int(row[0])

    def search(self, query: str, limit: int = 50) -> list[Message]:
        """Full-text search; falls back to substring match without FTS5
        or when the query is not valid FTS syntax."""
        query = query.strip()
        if not query:
            return []
        if self._db.fts_enabled:
            try:
                with self._db.connect() as conn:
                    rows = conn.execute(
                        _SELECT + " JOIN messages_fts ON messages_fts.rowid = m.id "
                        "WHERE messages_fts MATCH ? ORDER BY rank LIMIT ?",
                        (query, limit),
                    ).fetchall()
                return [_row_to_message(r) for r in rows]
            except sqlite3.OperationalError as exc:
                logger.debug("FTS query %r rejected (%s); using LIKE", query, exc)
        with self._db.connect() as conn:
            rows = conn.execute(
                _SELECT + " WHERE m.content LIKE ? ESCAPE '\\' "
                "ORDER BY m.timestamp DESC LIMIT ?",
                (f"%{_escape_like(query)}%", limit),
            ).fetchall()
        return [_row_to_message(r) for r in rows]


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
