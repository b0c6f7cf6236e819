"""Persistent map from grove session ids to provider session tokens.

Lets a backend that keeps its own conversation state (the CLI's resumable
sessions) pick up where it left off after a restart. Bindings are written
through immediately; reads are served from a lock-guarded cache.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from grove.shared.services.database import Database, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSessionBinding:
    internal_session_id: str
    provider_session_token: str
    provider_name: str
    updated_at: str


class SessionContinuityMap:
    """(internal session id, provider) -> resumable provider token."""

    def __init__(self, db: Database):
        self._db = db
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, str], ProviderSessionBinding] = {}
        self._loaded = False

    def _load(self) -> None:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT internal_session_id, provider, provider_session_token, updated_at "
                "FROM provider_sessions"
            ).fetchall()
        for row in rows:
            binding = ProviderSessionBinding(
                internal_session_id=row["internal_session_id"],
                provider_session_token=row["provider_session_token"],
                provider_name=row["provider"],
                updated_at=row["updated_at"],
            )
            self._cache[(binding.internal_session_id, binding.provider_name)] = binding
        self._loaded = True
        logger.debug("Session continuity map loaded %d bindings", len(rows))

    def get(self, internal_session_id: str, provider_name: str) -> str | None:
        """Token for the pair, or None if the provider never bound one."""
        with self._lock:
            if not self._loaded:
                self._load()
            binding = self._cache.get((internal_session_id, provider_name))
        return binding.provider_session_token if binding else None

    def bind(
        self, internal_session_id: str, provider_name: str, token: str,
    ) -> ProviderSessionBinding:
        """Record (or replace) the token for the pair and persist it."""
        binding = ProviderSessionBinding(
            internal_session_id=internal_session_id,
            provider_session_token=token,
            provider_name=provider_name,
            updated_at=utc_now_iso(),
        )
        with self._lock:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO provider_sessions"
                    "(internal_session_id, provider, provider_session_token, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (internal_session_id, provider_name, token, binding.updated_at),
                )
            self._cache[(internal_session_id, provider_name)] = binding
        logger.debug(
            "Session bound internal=%s provider=%s token=%s",
            internal_session_id, provider_name, token,
        )
        return binding

    def unbind(self, internal_session_id: str, provider_name: str | None = None) -> None:
        """Forget one binding, or every provider's binding for the session."""
        with self._lock:
            with self._db.transaction() as conn:
                if provider_name is None:
                    conn.execute(
                        "DELETE FROM provider_sessions WHERE internal_session_id = ?",
                        (internal_session_id,),
                    )
                else:
                    conn.execute(
                        "DELETE FROM provider_sessions WHERE internal_session_id = ? AND provider = ?",
                        (internal_session_id, provider_name),
                    )
            for key in list(self._cache):
                if key[0] == internal_session_id and (
                    provider_name is None or key[1] == provider_name
                ):
                    del self._cache[key]

    def invalidate(self) -> None:
        """Drop the cache so the next read reloads from the database."""
        with self._lock:
            self._cache.clear()
            self._loaded = False
