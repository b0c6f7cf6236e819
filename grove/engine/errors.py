"""Exception hierarchy for the grove engine.

Domain invariant violations raise; transport and protocol failures from
providers are reported as terminal error events instead.
"""
from __future__ import annotations


class GroveError(Exception):
    """Base exception for all grove errors."""


class TreeNotFoundError(GroveError):
    """Requested tree does not exist."""
    def __init__(self, tree_id: str):
        self.tree_id = tree_id
        super().__init__(f"Tree not found: {tree_id}")


class BranchNotFoundError(GroveError):
    """Requested branch does not exist."""
    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__(f"Branch not found: {branch_id}")


class MessageNotFoundError(GroveError):
    """Requested message does not exist in the given session."""
    def __init__(self, message_id: int, session_id: str | None = None):
        self.message_id = message_id
        self.session_id = session_id
        where = f" in session {session_id}" if session_id else ""
        super().__init__(f"Message {message_id} not found{where}")


class BranchInvariantError(GroveError):
    """A branch operation would break the tree/session invariants."""
    def __init__(self, branch_id: str | None, reason: str):
        self.branch_id = branch_id
        self.reason = reason
        super().__init__(f"Invalid branch {branch_id or '<new>'}: {reason}")


class BranchBusyError(GroveError):
    """A send is already in flight for this branch."""
    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__(f"Branch {branch_id} already has a response in flight")


class JobNotFoundError(GroveError):
    """Requested job does not exist."""
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ProviderNotAvailableError(GroveError):
    """Requested provider is not registered."""
    def __init__(self, provider_id: str, available: list[str] | None = None):
        self.provider_id = provider_id
        self.available = available or []
        super().__init__(
            f"Provider '{provider_id}' not registered. "
            f"Available: {', '.join(self.available) or 'none'}"
        )


class AnthropicAPIError(GroveError):
    """The Messages API returned an error status or error event."""
    def __init__(self, status: int | None, message: str):
        self.status = status
        self.message = message
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"{prefix}{message}")


class RateLimitedError(AnthropicAPIError):
    """HTTP 429 from the Messages API."""
    def __init__(self, retry_after: float | None, message: str = "rate limited"):
        self.retry_after = retry_after
        super().__init__(429, message)


class OverloadedError(AnthropicAPIError):
    """HTTP 529 from the Messages API."""
    def __init__(self, message: str = "API overloaded"):
        super().__init__(529, message)


class RemoteProviderError(GroveError):
    """A peer grove server rejected or failed a request."""
    def __init__(self, kind: str, message: str, status: int | None = None):
        self.kind = kind
        self.status = status
        super().__init__(message)
