"""Rotates a CLI-backed session before its context window overflows.

When the estimated pressure on a session the CLI resumes reaches HIGH,
the rotator asks the summarizer for a working-state checkpoint, drops
the CLI continuity binding so the next send starts a fresh CLI session,
and stores the checkpoint. The caller prepends the checkpoint to the
outgoing message so the new session picks up where the old one stopped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from grove.engine.context_pressure import PressureEstimate, estimate_pressure
from grove.engine.summarizer import BranchSummarizer
from grove.shared.services.database import Database, utc_now_iso
from grove.shared.services.event_log import EventLog
from grove.shared.services.message_store import MessageStore
from grove.shared.services.session_continuity import SessionContinuityMap

logger = logging.getLogger(__name__)

CHECKPOINT_HEADER = "[Context checkpoint from the previous session]"


@dataclass(frozen=True)
class ContextCheckpoint:
    session_id: str
    branch_id: str | None
    summary: str
    estimated_tokens: int
    message_count: int
    created_at: str


def seed_message(checkpoint: str, message: str) -> str:
    """Outgoing text for the first send after a rotation."""
    return f"{CHECKPOINT_HEADER}\n{checkpoint}\n\n[Current message]\n{message}"


class SessionRotator:
    def __init__(
        self,
        db: Database,
        message_store: MessageStore,
        continuity: SessionContinuityMap,
        summarizer: BranchSummarizer,
        *,
        event_log: EventLog | None = None,
    ) -> None:
        self._db = db
        self._messages = message_store
        self._continuity = continuity
        self._summarizer = summarizer
        self._event_log = event_log

    def pressure(self, session_id: str) -> PressureEstimate:
        history = self._messages.get_messages(session_id, limit=-1)
        return estimate_pressure(history, self._tool_event_count(session_id))

    def _tool_event_count(self, session_id: str) -> int:
        if self._event_log is None:
            return 0
        return self._event_log.event_counts(session_id).get("tool_start", 0)

    async def rotate_if_needed(
        self, session_id: str, branch_id: str | None, provider_id: str,
    ) -> str | None:
        """Checkpoint text when the session was rotated, else None.

        Only sessions the provider resumes through a continuity binding
        are rotated; other backends carry their own history.
        """
        if self._continuity.get(session_id, provider_id) is None:
            return None
        estimate = self.pressure(session_id)
        if not estimate.level.should_rotate:
            return None
        logger.info(
            "Context pressure %s (~%d tokens) session=%s; rotating",
            estimate.level.value, estimate.tokens, session_id,
        )
        return await self._rotate(session_id, branch_id, provider_id, estimate, "pressure_threshold")

    async def force_rotate(
        self, session_id: str, branch_id: str | None, provider_id: str,
    ) -> str | None:
        return await self._rotate(
            session_id, branch_id, provider_id, self.pressure(session_id), "forced",
        )

    async def _rotate(
        self,
        session_id: str,
        branch_id: str | None,
        provider_id: str,
        estimate: PressureEstimate,
        reason: str,
    ) -> str | None:
        summary = await self._summarizer.checkpoint(session_id)
        if summary is None:
            logger.warning("No checkpoint for session=%s; rotation skipped", session_id)
            return None
        self._continuity.unbind(session_id, provider_id)
        message_count = self._messages.count(session_id)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO context_checkpoints"
                "(session_id, branch_id, summary, estimated_tokens, message_count, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (session_id, branch_id, summary, estimate.tokens, message_count, utc_now_iso()),
            )
        if self._event_log is not None:
            self._event_log.record(
                "context_checkpoint", session_id=session_id, branch_id=branch_id,
                detail={
                    "estimated_tokens": estimate.tokens,
                    "message_count": message_count,
                    "summary_length": len(summary),
                },
            )
            self._event_log.record(
                "session_rotation", session_id=session_id, branch_id=branch_id,
                detail={"reason": reason, "provider": provider_id},
            )
        logger.info(
            "Session rotated session=%s provider=%s checkpoint_chars=%d",
            session_id, provider_id, len(summary),
        )
        return summary

    def latest_checkpoint(self, session_id: str) -> ContextCheckpoint | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM context_checkpoints WHERE session_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return ContextCheckpoint(
            session_id=row["session_id"],
            branch_id=row["branch_id"],
            summary=row["summary"],
            estimated_tokens=row["estimated_tokens"],
            message_count=row["message_count"],
            created_at=row["created_at"],
        )

    def rotation_count(self, session_id: str) -> int:
        with self._db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM context_checkpoints WHERE session_id = ?", (session_id,),
            ).fetchone()[0]
