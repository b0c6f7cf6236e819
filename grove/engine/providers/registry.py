"""Provider router: ordered registry, selection and health reporting.

Selection returns the provider matching the persisted preference, falling
back to the first registered provider when the preference is stale.
Health is advisory: an unhealthy provider stays selectable and a send
against it reports whatever error its backend produces.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator

from grove.adapters.events import ErrorEvent, ErrorKind, ProviderEvent
from grove.engine.errors import ProviderNotAvailableError
from grove.engine.providers.base import Provider, ProviderHealth, SendContext
from grove.shared.services.preferences import UserPreferences

if TYPE_CHECKING:
    from grove.engine.config import EngineConfig
    from grove.engine.tools import ToolExecutor
    from grove.engine.yaml_config import ProviderConfig
    from grove.shared.services.database import Database
    from grove.shared.services.message_store import MessageStore
    from grove.shared.services.session_continuity import SessionContinuityMap

logger = logging.getLogger(__name__)

ANTHROPIC_KEY_FILE = Path.home() / ".anthropic" / "api_key"
NO_PROVIDER_MESSAGE = "No LLM provider available"


def resolve_api_key(env_var: str = "ANTHROPIC_API_KEY") -> str | None:
    """API key from *env_var*, else ~/.anthropic/api_key."""
    key = os.getenv(env_var, "").strip()
    if key:
        return key
    try:
        key = ANTHROPIC_KEY_FILE.read_text().strip()
    except OSError:
        return None
    return key or None


class ProviderRouter:
    """Ordered registry of providers with preference-based selection."""

    def __init__(
        self,
        preferences: UserPreferences | None = None,
        preferences_path: Path | None = None,
    ) -> None:
        self._providers: dict[str, Provider] = {}
        self._preferences = preferences or UserPreferences()
        self._preferences_path = preferences_path

    # ── Registry ──

    def register(self, provider: Provider) -> None:
        """Append *provider*; re-registering an id replaces it in place."""
        self._providers[provider.identifier] = provider
        logger.info("Provider registered: %s (%s)", provider.identifier, provider.display_name)

    def deregister(self, provider_id: str) -> Provider | None:
        provider = self._providers.pop(provider_id, None)
        if provider is not None:
            logger.info("Provider deregistered: %s", provider_id)
        return provider

    def get(self, provider_id: str) -> Provider | None:
        return self._providers.get(provider_id)

    def get_or_raise(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotAvailableError(provider_id, self.list_ids())
        return provider

    def list_ids(self) -> list[str]:
        return list(self._providers)

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers.values())

    # ── Selection ──

    @property
    def selected_id(self) -> str | None:
        return self._preferences.selected_provider

    @property
    def active_provider(self) -> Provider | None:
        """Preferred provider, else the first registered, else None."""
        preferred = self._preferences.selected_provider
        if preferred and preferred in self._providers:
            return self._providers[preferred]
        return next(iter(self._providers.values()), None)

    def select(self, provider_id: str) -> Provider:
        """Persist *provider_id* as the preference."""
        provider = self.get_or_raise(provider_id)
        self._preferences.selected_provider = provider_id
        self._save_preferences()
        logger.info("Provider selected: %s", provider_id)
        return provider

    def set_default(self, provider_id: str) -> None:
        """Use *provider_id* when no preference has been stored yet."""
        if self._preferences.selected_provider is None and provider_id in self._providers:
            self._preferences.selected_provider = provider_id

    def enable_remote(
        self,
        url: str,
        token: str | None,
        *,
        timeout_seconds: float = 300.0,
        provider_id: str = "remote-grove",
        persist: bool = True,
    ) -> Provider:
        """Register (or replace) the remote peer provider."""
        from .remote_provider import RemoteProvider
        provider = RemoteProvider(
            url, token, timeout_seconds=timeout_seconds, provider_id=provider_id,
        )
        self.register(provider)
        if persist:
            self._preferences.remote_enabled = True
            self._preferences.remote_url = url
            self._save_preferences()
        return provider

    def disable_remote(self, provider_id: str = "remote-grove") -> None:
        self.deregister(provider_id)
        self._preferences.remote_enabled = False
        self._save_preferences()

    def _save_preferences(self) -> None:
        if self._preferences_path is not None:
            self._preferences.save(self._preferences_path)

    # ── Health ──

    async def refresh_health(self) -> dict[str, ProviderHealth]:
        """Run every provider's health check concurrently."""
        providers = self.providers
        results = await asyncio.gather(
            *(p.check_health() for p in providers), return_exceptions=True,
        )
        report: dict[str, ProviderHealth] = {}
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.warning("Health check for %s raised: %s", provider.identifier, result)
                report[provider.identifier] = provider.health
            else:
                report[provider.identifier] = result
            if not report[provider.identifier].is_usable:
                logger.warning(
                    "Provider %s is %s: %s",
                    provider.identifier,
                    report[provider.identifier].status.value,
                    report[provider.identifier].detail,
                )
        return report

    def health_report(self) -> list[dict]:
        active = self.active_provider
        return [
            {**p.describe(), "active": p is active}
            for p in self._providers.values()
        ]

    # ── Routing ──

    async def send(
        self, context: SendContext, provider_id: str | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream from *provider_id* (or the active provider)."""
        provider = self._providers.get(provider_id) if provider_id else self.active_provider
        if provider is None:
            yield ErrorEvent(
                message=NO_PROVIDER_MESSAGE if not provider_id
                else f"Provider '{provider_id}' is not registered",
                kind=ErrorKind.DOMAIN,
            )
            return
        logger.debug("Routing session=%s to %s", context.session_id, provider.identifier)
        stream = provider.send(context)
        try:
            async for event in stream:
                yield event
        finally:
            await stream.aclose()

    async def cancel(self, session_id: str | None = None) -> None:
        for provider in self.providers:
            await provider.cancel(session_id)

    async def warm_up(self, context: SendContext, provider_id: str | None = None) -> None:
        provider = self._providers.get(provider_id) if provider_id else self.active_provider
        if provider is not None:
            await provider.warm_up(context)

    def forget(self, session_ids: list[str]) -> None:
        """Tell every provider the sessions are gone."""
        for provider in self.providers:
            for session_id in session_ids:
                provider.forget(session_id)
        if session_ids:
            logger.debug("Forgot %d sessions across providers", len(session_ids))

    async def shutdown_all(self) -> None:
        for provider in self.providers:
            try:
                await provider.shutdown()
            except Exception:
                logger.exception("Error shutting down provider %s", provider.identifier)


def build_provider(
    provider_id: str,
    config: ProviderConfig,
    *,
    engine: EngineConfig,
    db: Database,
    message_store: MessageStore,
    continuity: SessionContinuityMap,
    tool_executor: ToolExecutor | None,
) -> Provider | None:
    """Instantiate one provider from config, or None when its
    prerequisite (API key, url) is missing."""
    if config.type == "cli":
        from .claude_cli_provider import ClaudeCLIProvider
        return ClaudeCLIProvider(
            continuity,
            command=config.command or engine.cli_command,
            default_model=engine.default_model,
            permission_flag=engine.cli_permission_flag,
            extra_path_dirs=engine.extra_path_dirs,
            result_display_length=engine.tool_result_display_length,
            provider_id=provider_id,
        )
    if config.type == "anthropic":
        api_key = resolve_api_key(config.api_key_env or engine.api_key_env)
        if not api_key:
            logger.info("Provider %s skipped: no API key", provider_id)
            return None
        from .anthropic_api_provider import AnthropicAPIProvider
        from .anthropic_client import AnthropicClient, AnthropicClientConfig
        from .conversation_state import ConversationStateManager
        return AnthropicAPIProvider(
            AnthropicClient(AnthropicClientConfig(api_key=api_key, base_url=engine.api_base_url)),
            ConversationStateManager(db),
            message_store,
            tool_executor,
            default_model=engine.default_model,
            max_tokens=engine.api_max_tokens,
            max_tool_iterations=engine.max_tool_iterations,
            result_display_length=engine.tool_result_display_length,
            provider_id=provider_id,
        )
    if config.type == "remote":
        if not config.url:
            logger.warning("Provider %s skipped: remote provider needs a url", provider_id)
            return None
        from .remote_provider import RemoteProvider
        return RemoteProvider(
            config.url,
            config.resolve_token(),
            timeout_seconds=engine.remote_timeout_seconds,
            provider_id=provider_id,
        )
    logger.warning("Unknown provider type %r for %s", config.type, provider_id)
    return None


def build_provider_router(
    configs: dict[str, ProviderConfig],
    *,
    engine: EngineConfig,
    db: Database,
    message_store: MessageStore,
    continuity: SessionContinuityMap,
    tool_executor: ToolExecutor | None = None,
    preferences: UserPreferences | None = None,
    preferences_path: Path | None = None,
) -> ProviderRouter:
    """Build a router from YAML provider configs, in file order."""
    router = ProviderRouter(preferences=preferences, preferences_path=preferences_path)
    for provider_id, config in configs.items():
        if not config.enabled:
            logger.debug("Provider %s disabled in config", provider_id)
            continue
        provider = build_provider(
            provider_id,
            config,
            engine=engine,
            db=db,
            message_store=message_store,
            continuity=continuity,
            tool_executor=tool_executor,
        )
        if provider is not None:
            router.register(provider)
    router.set_default(engine.default_provider)
    if preferences is not None and preferences.remote_enabled and preferences.remote_url:
        if not any(c.type == "remote" for c in configs.values()):
            router.enable_remote(
                preferences.remote_url,
                os.getenv("GROVE_REMOTE_TOKEN") or None,
                timeout_seconds=engine.remote_timeout_seconds,
                persist=False,
            )
    return router
