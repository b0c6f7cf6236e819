"""YAML configuration loader for grove.

Example grove.yaml:

    engine:
      db_path: ~/.grove/grove.db
      default_model: claude-sonnet-4-5
      server_port: 5865

    providers:
      claude-code:
        type: cli
        command: claude
      anthropic-api:
        type: anthropic
        api_key_env: ANTHROPIC_API_KEY
      remote-grove:
        type: remote
        url: http://workstation.local:5865
        token_env: GROVE_REMOTE_TOKEN
        enabled: false

Providers are registered in file order, which is also the fallback order
when the preferred provider is missing.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .config import GROVE_HOME, EngineConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = GROVE_HOME / "grove.yaml"

PROVIDER_TYPES = ("cli", "anthropic", "remote")


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    type: str  # "cli", "anthropic" or "remote"
    command: str | None = None  # cli: path to the CLI binary
    api_key_env: str | None = None  # anthropic: env var holding the key
    url: str | None = None  # remote: base url of the peer server
    token: str | None = None  # remote: shared secret
    token_env: str | None = None  # remote: env var holding the secret
    enabled: bool = True

    def resolve_token(self) -> str | None:
        if self.token:
            return self.token
        if self.token_env:
            return os.getenv(self.token_env) or None
        return None


@dataclass
class GroveConfig:
    """Parsed grove.yaml."""
    engine: EngineConfig
    providers: dict[str, ProviderConfig]
    source: Path | None = None


def default_provider_configs(engine: EngineConfig) -> dict[str, ProviderConfig]:
    """Providers used when no YAML file declares any."""
    return {
        "claude-code": ProviderConfig(type="cli", command=engine.cli_command),
        "anthropic-api": ProviderConfig(
            type="anthropic", api_key_env=engine.api_key_env,
        ),
    }


def _apply_engine_overrides(engine: EngineConfig, raw: dict[str, Any]) -> None:
    known = {f.name: f for f in fields(EngineConfig)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("grove.yaml: unknown engine key %r ignored", key)
            continue
        if isinstance(value, str) and key.endswith("_path"):
            value = str(Path(value).expanduser())
        setattr(engine, key, value)


def _parse_providers(raw: dict[str, Any]) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for provider_id, entry in raw.items():
        if not isinstance(entry, dict):
            logger.warning(
                "grove.yaml: provider %r must be a mapping, got %s",
                provider_id, type(entry).__name__,
            )
            continue
        ptype = str(entry.get("type", "")).strip()
        if ptype not in PROVIDER_TYPES:
            logger.warning(
                "grove.yaml: provider %r has unknown type %r (expected one of %s)",
                provider_id, ptype, ", ".join(PROVIDER_TYPES),
            )
            continue
        providers[str(provider_id)] = ProviderConfig(
            type=ptype,
            command=entry.get("command"),
            api_key_env=entry.get("api_key_env"),
            url=entry.get("url"),
            token=entry.get("token"),
            token_env=entry.get("token_env"),
            enabled=bool(entry.get("enabled", True)),
        )
    return providers


def load_yaml_config(
    path: str | Path | None = None,
    *,
    engine: EngineConfig | None = None,
) -> GroveConfig:
    """Load grove.yaml on top of *engine* (defaults to EngineConfig.from_env()).

    A missing file yields the default provider set. A corrupt file is
    logged and treated as missing.
    """
    engine = engine or EngineConfig.from_env()
    target = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
    raw: dict[str, Any] = {}
    if target.exists():
        try:
            with open(target) as f:
                raw = yaml.safe_load(f) or {}
            logger.info("load_yaml_config: loaded %s", target)
        except yaml.YAMLError as exc:
            logger.warning(
                "load_yaml_config: YAML parse error in %s: %s", target, exc,
            )
            raw = {}
        if not isinstance(raw, dict):
            logger.warning(
                "load_yaml_config: %s does not contain a mapping; ignoring", target,
            )
            raw = {}
    else:
        logger.debug("load_yaml_config: %s not found; using defaults", target)

    engine_raw = raw.get("engine") or {}
    if isinstance(engine_raw, dict):
        _apply_engine_overrides(engine, engine_raw)

    providers_raw = raw.get("providers") or {}
    providers = (
        _parse_providers(providers_raw) if isinstance(providers_raw, dict) else {}
    )
    if not providers:
        providers = default_provider_configs(engine)

    return GroveConfig(
        engine=engine,
        providers=providers,
        source=target if target.exists() else None,
    )
