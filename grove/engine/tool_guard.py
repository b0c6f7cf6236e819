"""Pre-flight risk assessment for tool calls.

``assess`` pattern-matches shell commands and file-write targets before
LocalToolExecutor runs them. Calls rated DESTRUCTIVE or CRITICAL need an
approver's consent; CAUTION calls are logged and allowed.
"""
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LARGE_FILE_BYTES = 1_000_000

SHELL_TOOLS = frozenset({"bash", "background_run"})
FILE_WRITE_TOOLS = frozenset({"write_file", "edit_file"})


class RiskLevel(enum.IntEnum):
    SAFE = 0
    CAUTION = 1
    DESTRUCTIVE = 2
    CRITICAL = 3


# Matched against the lowercased, whitespace-collapsed command. First hit wins.
_SHELL_PATTERNS: list[tuple[str, str, RiskLevel]] = [
    ("rm -rf", "Recursive force delete", RiskLevel.CRITICAL),
    ("rm -r -f", "Recursive force delete", RiskLevel.CRITICAL),
    ("rm -fr", "Recursive force delete", RiskLevel.CRITICAL),
    ("rm --recursive --force", "Recursive force delete", RiskLevel.CRITICAL),
    ("rm -r /", "Recursive delete from root", RiskLevel.CRITICAL),
    ("sudo rm", "Elevated delete", RiskLevel.CRITICAL),
    ("git push --force", "Force push overwrites remote history", RiskLevel.CRITICAL),
    ("git push -f", "Force push overwrites remote history", RiskLevel.CRITICAL),
    ("git push origin --force", "Force push overwrites remote history", RiskLevel.CRITICAL),
    ("--force-with-lease", "Force push with lease", RiskLevel.DESTRUCTIVE),
    ("git reset --hard", "Hard reset discards uncommitted changes", RiskLevel.DESTRUCTIVE),
    ("git clean -f", "Force clean deletes untracked files", RiskLevel.DESTRUCTIVE),
    ("git clean --force", "Force clean deletes untracked files", RiskLevel.DESTRUCTIVE),
    ("drop table", "SQL table drop", RiskLevel.CRITICAL),
    ("drop database", "SQL database drop", RiskLevel.CRITICAL),
    ("truncate", "Truncation", RiskLevel.DESTRUCTIVE),
    ("chmod 777", "World-writable permissions", RiskLevel.DESTRUCTIVE),
    ("chmod -r", "Recursive permission change", RiskLevel.CAUTION),
    (":> /", "File truncation by redirect", RiskLevel.DESTRUCTIVE),
    ("mkfs", "Filesystem formatting", RiskLevel.CRITICAL),
    ("dd if=", "Low-level disk write", RiskLevel.CRITICAL),
    ("kill -9", "Force kill", RiskLevel.CAUTION),
    ("pkill", "Process pattern kill", RiskLevel.CAUTION),
]


def protected_paths() -> list[str]:
    """System and credential locations. Home-relative entries are expanded."""
    home = str(Path.home())
    return [
        "/etc/", "/usr/", "/system/", "/library/",
        f"{home}/.ssh/", f"{home}/.gnupg/", f"{home}/.aws/",
        "~/.ssh/", "~/.gnupg/", "~/.aws/",
        ".env", "credentials", "secrets", "id_rsa", "id_ed25519",
    ]


@dataclass(frozen=True)
class Assessment:
    tool_name: str
    level: RiskLevel = RiskLevel.SAFE
    reason: str = ""

    @property
    def requires_approval(self) -> bool:
        return self.level >= RiskLevel.DESTRUCTIVE


def assess(
    tool_name: str,
    tool_input: dict[str, Any],
    working_directory: str | None = None,
) -> Assessment:
    """Rate one tool call. Tools that neither run shell nor write files are safe."""
    if tool_name in SHELL_TOOLS:
        return _assess_shell(tool_name, tool_input.get("command"))
    if tool_name in FILE_WRITE_TOOLS:
        return _assess_write(tool_name, tool_input.get("path"), working_directory)
    return Assessment(tool_name)


def _assess_shell(tool_name: str, command: Any) -> Assessment:
    if not isinstance(command, str):
        return Assessment(tool_name)
    normalized = " ".join(command.lower().split())
    for pattern, reason, level in _SHELL_PATTERNS:
        if pattern in normalized:
            return Assessment(tool_name, level, reason)
    for path in protected_paths():
        if path.lower() in normalized:
            return Assessment(tool_name, RiskLevel.CAUTION, f"Accesses protected path: {path}")
    return Assessment(tool_name)


def _assess_write(tool_name: str, raw_path: Any, working_directory: str | None) -> Assessment:
    if not isinstance(raw_path, str) or not raw_path:
        return Assessment(tool_name)
    lowered = raw_path.lower()
    for path in protected_paths():
        if path.lower() in lowered:
            return Assessment(
                tool_name, RiskLevel.DESTRUCTIVE, f"Writes to protected path: {raw_path}",
            )

    target = Path(raw_path).expanduser()
    if working_directory:
        root = Path(working_directory).expanduser().resolve()
        if not target.is_absolute():
            target = root / target
        target = target.resolve()
        if target != root and root not in target.parents:
            return Assessment(
                tool_name,
                RiskLevel.DESTRUCTIVE,
                f"Writes outside the working directory: {raw_path}",
            )

    try:
        size = os.path.getsize(target)
    except OSError:
        size = 0
    if size > LARGE_FILE_BYTES:
        return Assessment(
            tool_name, RiskLevel.CAUTION, f"Overwrites a large file ({size // 1024}KB)",
        )
    return Assessment(tool_name)
