"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GROVE_* env vars, or
with a grove.yaml file (see yaml_config).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

GROVE_HOME = Path.home() / ".grove"

# Directories prepended to PATH for subprocesses. GUI-launched servers
# often inherit a minimal PATH that misses user-installed CLIs.
DEFAULT_EXTRA_PATH_DIRS = (
    str(Path.home() / ".local" / "bin"),
    str(Path.home() / ".claude" / "local"),
    "/opt/homebrew/bin",
    "/usr/local/bin",
)


def _split_paths(raw: str) -> list[str]:
    return [p for p in raw.split(os.pathsep) if p]


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def augmented_env(
    extra_path_dirs: list[str] | None = None,
    *,
    strip: tuple[str, ...] = (),
) -> dict[str, str]:
    """Copy of os.environ with PATH extended and HOME guaranteed set."""
    env = dict(os.environ)
    for key in strip:
        env.pop(key, None)
    current = _split_paths(env.get("PATH", ""))
    prefix = [d for d in (extra_path_dirs or []) if d not in current]
    env["PATH"] = os.pathsep.join(prefix + current)
    env.setdefault("HOME", str(Path.home()))
    return env


@dataclass
class EngineConfig:
    """Grove engine configuration."""

    # Storage
    db_path: str = str(GROVE_HOME / "grove.db")
    preferences_path: str = str(GROVE_HOME / "preferences.json")

    # Provider defaults
    default_model: str = "claude-sonnet-4-5"
    default_provider: str = "claude-code"
    cli_command: str = "claude"
    # Permission flag passed to the CLI. Empty string disables it.
    cli_permission_flag: str = "--dangerously-skip-permissions"
    api_key_env: str = "ANTHROPIC_API_KEY"
    api_base_url: str = "https://api.anthropic.com"
    api_max_tokens: int = 8192
    max_tool_iterations: int = 25
    remote_timeout_seconds: float = 300.0
    # Length of tool results carried in toolEnd events.
    tool_result_display_length: int = 200
    # Run destructive tool calls without asking. Off: they are refused.
    tool_auto_approve: bool = False

    # Context management
    summary_model: str = "claude-haiku-4-5"
    # Rotate CLI sessions whose estimated context is nearly full.
    session_rotation: bool = True
    event_retention_days: int = 30

    # Job queue
    job_output_cap: int = 200_000
    job_shell: str = "/bin/bash"
    extra_path_dirs: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXTRA_PATH_DIRS)
    )

    # HTTP server
    server_host: str = "127.0.0.1"
    server_port: int = 5865
    server_token: str | None = None

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from GROVE_* environment variables."""
        grove_vars = {
            k: v for k, v in os.environ.items() if k.startswith("GROVE_")
        }
        if grove_vars:
            logger.info(
                "EngineConfig.from_env: GROVE_* env overrides: %s",
                ", ".join(
                    f"{k}={'***' if 'TOKEN' in k else v}"
                    for k, v in sorted(grove_vars.items())
                ),
            )
        else:
            logger.debug("EngineConfig.from_env: no GROVE_* env vars set, using defaults")

        extra_dirs_raw = os.getenv("GROVE_EXTRA_PATH")
        return cls(
            db_path=os.getenv("GROVE_DB_PATH", cls.db_path),
            preferences_path=os.getenv(
                "GROVE_PREFERENCES_PATH", cls.preferences_path
            ),
            default_model=os.getenv("GROVE_DEFAULT_MODEL", cls.default_model),
            default_provider=os.getenv(
                "GROVE_DEFAULT_PROVIDER", cls.default_provider
            ),
            cli_command=os.getenv("GROVE_CLI_COMMAND", cls.cli_command),
            cli_permission_flag=os.getenv(
                "GROVE_CLI_PERMISSION_FLAG", cls.cli_permission_flag
            ),
            api_key_env=os.getenv("GROVE_API_KEY_ENV", cls.api_key_env),
            api_base_url=os.getenv("GROVE_API_BASE_URL", cls.api_base_url),
            api_max_tokens=int(os.getenv(
                "GROVE_API_MAX_TOKENS", str(cls.api_max_tokens)
            )),
            max_tool_iterations=int(os.getenv(
                "GROVE_MAX_TOOL_ITERATIONS", str(cls.max_tool_iterations)
            )),
            remote_timeout_seconds=float(os.getenv(
                "GROVE_REMOTE_TIMEOUT", str(cls.remote_timeout_seconds)
            )),
            tool_result_display_length=int(os.getenv(
                "GROVE_TOOL_RESULT_DISPLAY_LENGTH",
                str(cls.tool_result_display_length),
            )),
            tool_auto_approve=_env_flag("GROVE_TOOL_AUTO_APPROVE", cls.tool_auto_approve),
            summary_model=os.getenv("GROVE_SUMMARY_MODEL", cls.summary_model),
            session_rotation=_env_flag("GROVE_SESSION_ROTATION", cls.session_rotation),
            event_retention_days=int(os.getenv(
                "GROVE_EVENT_RETENTION_DAYS", str(cls.event_retention_days)
            )),
            job_output_cap=int(os.getenv(
                "GROVE_JOB_OUTPUT_CAP", str(cls.job_output_cap)
            )),
            job_shell=os.getenv("GROVE_JOB_SHELL", cls.job_shell),
            extra_path_dirs=(
                _split_paths(extra_dirs_raw)
                if extra_dirs_raw is not None
                else list(DEFAULT_EXTRA_PATH_DIRS)
            ),
            server_host=os.getenv("GROVE_HOST", cls.server_host),
            server_port=int(os.getenv("GROVE_PORT", str(cls.server_port))),
            server_token=os.getenv("GROVE_TOKEN") or None,
            log_level=os.getenv("GROVE_LOG_LEVEL", cls.log_level),
        )
