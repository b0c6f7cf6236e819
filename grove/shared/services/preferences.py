"""User preferences stored in ~/.grove/preferences.json.

Holds the selected provider and a few client-side toggles. Settings are
global rather than per-tree since they describe the user, not a project.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from grove.engine.config import GROVE_HOME
from grove.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

PREFS_PATH = GROVE_HOME / "preferences.json"


@dataclass
class UserPreferences:
    """User preference settings.

    Attributes:
        selected_provider: Identifier of the provider the router should
            prefer. Stale ids fall back to the first registered provider.
        remote_enabled: Whether the remote peer provider is registered.
        remote_url: Base url of the peer grove server.
    """

    selected_provider: str | None = None
    remote_enabled: bool = False
    remote_url: str | None = None

    def validate(self) -> None:
        if self.selected_provider is not None and not isinstance(self.selected_provider, str):
            self.selected_provider = None
        if isinstance(self.selected_provider, str) and not self.selected_provider.strip():
            self.selected_provider = None
        if not isinstance(self.remote_enabled, bool):
            self.remote_enabled = False
        if self.remote_url is not None and not isinstance(self.remote_url, str):
            self.remote_url = None

    def save(self, path: Path | None = None) -> None:
        """Persist preferences to disk."""
        target = path or PREFS_PATH
        try:
            atomic_write_text(target, json.dumps(asdict(self), indent=2))
        except OSError:
            logger.warning("Failed to save preferences to %s", target, exc_info=True)

    @classmethod
    def load(cls, path: Path | None = None) -> UserPreferences:
        """Load preferences from disk, returning defaults if missing/corrupt."""
        target = path or PREFS_PATH
        if not target.exists():
            logger.debug("Preferences file not found at %s; using defaults", target)
            return cls()
        try:
            data = json.loads(target.read_text())
        except (OSError, json.JSONDecodeError):
            logger.warning("Preferences at %s unreadable; using defaults", target)
            return cls()
        if not isinstance(data, dict):
            return cls()
        prefs = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        prefs.validate()
        logger.debug("Loaded preferences from %s", target)
        return prefs
