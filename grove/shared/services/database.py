"""SQLite storage shared by the grove stores.

Every store takes a Database and opens short-lived connections through
``connect()``; multi-statement writes go through ``transaction()`` so they
commit or roll back as a unit. The schema is versioned with
``PRAGMA user_version``.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """UTC timestamp with microseconds; sorts lexically in time order."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


_MIGRATIONS: list[tuple[int, list[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS trees (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            project TEXT,
            working_directory TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            archived INTEGER NOT NULL DEFAULT 0
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            working_directory TEXT,
            description TEXT,
            started_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS branches (
            id TEXT PRIMARY KEY,
            tree_id TEXT NOT NULL,
            session_id TEXT NOT NULL UNIQUE,
            parent_branch_id TEXT,
            fork_from_message_id INTEGER,
            branch_type TEXT NOT NULL DEFAULT 'conversation'
                CHECK (branch_type IN ('conversation', 'implementation', 'exploration')),
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'completed', 'archived', 'failed')),
            title TEXT,
            summary TEXT,
            model TEXT,
            context_snapshot TEXT,
            collapsed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_branches_tree ON branches(tree_id, created_at)",
        "CREATE INDEX IF NOT EXISTS idx_branches_parent ON branches(parent_branch_id)",
        "CREATE INDEX IF NOT EXISTS idx_branches_fork ON branches(fork_from_message_id)",
        """
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
            content TEXT NOT NULL,
            timestamp TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, timestamp, id)",
    ]),
    (2, [
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL DEFAULT 'shell' CHECK (type IN ('shell', 'tool')),
            command TEXT NOT NULL,
            working_directory TEXT NOT NULL,
            branch_id TEXT,
            status TEXT NOT NULL DEFAULT 'queued'
                CHECK (status IN ('queued', 'running', 'completed', 'failed', 'cancelled')),
            output TEXT,
            error TEXT,
            created_at TEXT NOT NULL,
            completed_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at)",
        """
        CREATE TABLE IF NOT EXISTS provider_sessions (
            internal_session_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            provider_session_token TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (internal_session_id, provider)
        )
        """,
    ]),
    (3, [
        """
        CREATE TABLE IF NOT EXISTS api_state (
            session_id TEXT PRIMARY KEY,
            api_messages TEXT NOT NULL,
            system_prompt TEXT NOT NULL,
            token_usage TEXT NOT NULL DEFAULT '{}',
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS token_usage (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            model TEXT,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            cache_creation_input_tokens INTEGER NOT NULL DEFAULT 0,
            cache_read_input_tokens INTEGER NOT NULL DEFAULT 0,
            cost_usd REAL,
            recorded_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_token_usage_session ON token_usage(session_id)",
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT,
            branch_id TEXT,
            event_type TEXT NOT NULL,
            detail TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_events_type_ts ON events(event_type, created_at)",
    ]),
    (4, [
        """
        CREATE TABLE IF NOT EXISTS context_checkpoints (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            branch_id TEXT,
            summary TEXT NOT NULL,
            estimated_tokens INTEGER NOT NULL,
            message_count INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON context_checkpoints(session_id, id)",
        "CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id)",
    ]),
]

SCHEMA_VERSION = _MIGRATIONS[-1][0]

# Optional full-text index. SQLite builds without FTS5 fall back to LIKE.
_FTS_STATEMENTS = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
        content, content='messages', content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_insert AFTER INSERT ON messages BEGIN
        INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS messages_fts_delete AFTER DELETE ON messages BEGIN
        INSERT INTO messages_fts(messages_fts, rowid, content)
        VALUES ('delete', old.id, old.content);
    END
    """,
]


class Database:
    """Owns the database path, schema and connection discipline."""

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes write transactions within this process so SQLite
        # never reports "database is locked" to our own callers.
        self._write_lock = threading.RLock()
        self.fts_enabled = False
        self._migrate()

    @property
    def path(self) -> Path:
        return self._db_path

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Read connection. Closed on exit; nothing is committed."""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write connection committed on success, rolled back on error."""
        with self._write_lock:
            conn = self._open()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _migrate(self) -> None:
        with self.transaction() as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            for target, statements in _MIGRATIONS:
                if target <= version:
                    continue
                for stmt in statements:
                    conn.execute(stmt)
                logger.info("Database %s migrated to schema v%d", self._db_path, target)
            if version < SCHEMA_VERSION:
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self.fts_enabled = self._ensure_fts()

    def _ensure_fts(self) -> bool:
        try:
            with self.transaction() as conn:
                for stmt in _FTS_STATEMENTS:
                    conn.execute(stmt)
            return True
        except sqlite3.OperationalError as exc:
            logger.info("FTS5 unavailable (%s); message search uses LIKE", exc)
            return False
