"""Activity log of significant conversation actions.

One row per user/assistant message, tool call, fork or provider error,
kept for diagnostics. Text chunks are counted, not stored.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from grove.shared.services.database import Database, utc_now_iso

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only diagnostic events in the ``events`` table."""

    def __init__(self, db: Database):
        self._db = db

    def record(
        self,
        event_type: str,
        *,
        session_id: str | None = None,
        branch_id: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        payload = json.dumps(detail or {}, sort_keys=True, default=str)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO events(session_id, branch_id, event_type, detail, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (session_id, branch_id, event_type, payload, utc_now_iso()),
            )

    def recent_events(
        self,
        limit: int = 100,
        *,
        session_id: str | None = None,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM events {where} ORDER BY id DESC LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [
            {
                "id": r["id"],
                "session_id": r["session_id"],
                "branch_id": r["branch_id"],
                "event_type": r["event_type"],
                "detail": json.loads(r["detail"] or "{}"),
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    def event_counts(self, session_id: str | None = None) -> dict[str, int]:
        """Rows per event type, for one session or across all of them."""
        where = "WHERE session_id = ?" if session_id is not None else ""
        params = (session_id,) if session_id is not None else ()
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT event_type, COUNT(*) AS n FROM events {where} GROUP BY event_type",
                params,
            ).fetchall()
        return {r["event_type"]: int(r["n"]) for r in rows}

    def prune(self, older_than_days: int = 30) -> int:
        """Delete events older than the cutoff. Returns rows removed."""
        cutoff = (
            datetime.now(timezone.utc) - timedelta(days=older_than_days)
        ).isoformat(timespec="microseconds")
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM events WHERE created_at < ?", (cutoff,))
        if cur.rowcount:
            logger.info("Pruned %d events older than %d days", cur.rowcount, older_than_days)
        return cur.rowcount
