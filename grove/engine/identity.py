"""System-prompt overlay appended to every provider's own system prompt."""
from __future__ import annotations

from grove.engine.providers.base import SendContext

BASE_OVERLAY = (
    "You are running inside Grove, a branching conversation workspace. "
    "The user may fork this conversation at any message, so keep each reply "
    "self-contained. Prefer concise answers. For shell commands that take "
    "longer than a minute, use background jobs instead of blocking the chat."
)


def build_overlay(context: SendContext, *, branch_title: str | None = None) -> str:
    """Overlay text for one send. Context-dependent lines go last."""
    lines = [BASE_OVERLAY]
    if context.working_directory:
        lines.append(f"Working directory: {context.working_directory}")
    if context.project:
        lines.append(f"Project: {context.project}")
    if branch_title:
        lines.append(f"Branch: {branch_title}")
    if context.system_prompt:
        lines.append(context.system_prompt)
    return "\n\n".join(lines)
