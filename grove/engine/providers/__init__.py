"""Provider abstraction: CLI subprocess, direct API and remote peer."""
from .base import (
    HealthStatus,
    Provider,
    ProviderCapability,
    ProviderHealth,
    SendContext,
)
from .registry import ProviderRouter, build_provider_router
from .claude_cli_provider import ClaudeCLIProvider
from .anthropic_api_provider import AnthropicAPIProvider
from .remote_provider import RemoteProvider

__all__ = [
    "HealthStatus",
    "Provider",
    "ProviderCapability",
    "ProviderHealth",
    "SendContext",
    "ProviderRouter",
    "build_provider_router",
    "ClaudeCLIProvider",
    "AnthropicAPIProvider",
    "RemoteProvider",
]
