"""Grove engine: branching conversations routed across LLM providers."""
from .config import EngineConfig
from .errors import (
    AnthropicAPIError,
    BranchBusyError,
    BranchInvariantError,
    BranchNotFoundError,
    GroveError,
    JobNotFoundError,
    MessageNotFoundError,
    OverloadedError,
    ProviderNotAvailableError,
    RateLimitedError,
    RemoteProviderError,
    TreeNotFoundError,
)

__all__ = [
    "EngineConfig",
    "AnthropicAPIError",
    "BranchBusyError",
    "BranchInvariantError",
    "BranchNotFoundError",
    "GroveError",
    "JobNotFoundError",
    "MessageNotFoundError",
    "OverloadedError",
    "ProviderNotAvailableError",
    "RateLimitedError",
    "RemoteProviderError",
    "TreeNotFoundError",
]
