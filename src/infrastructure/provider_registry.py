"""Provider registry: credentials, adapters and failover ordering.

Model selection uses qualified ids, like the rest of the gateway:

- ``"openai-primary:gpt-4o-mini"``: a credential id, then a model override
- ``"anthropic:claude-sonnet-4-5"``: a provider type, then a model override
- ``"llama3.2:3b"`` or ``None``: no known prefix, configured order is kept

Matching credentials are moved to the front of the failover list; the
remaining credentials stay behind them as fallbacks with their own models.

Usage:
    registry = ProviderRegistry.from_settings(app_settings)
    targets = registry.resolve_targets("anthropic:claude-sonnet-4-5")
"""

import logging
from typing import TYPE_CHECKING, Any

import httpx

from application.providers import ProviderAdapter
from application.services.retry_controller import FailoverTarget
from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import ProviderCredential

from .adapters import AnthropicProviderAdapter, OllamaProviderAdapter, OpenAiProviderAdapter

if TYPE_CHECKING:
    from neuroglia.hosting.web import WebApplicationBuilder

    from application.settings import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one adapter per provider family and the ordered credential list."""

    def __init__(self, adapters: dict[str, ProviderAdapter], credentials: list[ProviderCredential] | None = None) -> None:
        self._adapters = dict(adapters)
        self._credentials: list[ProviderCredential] = []
        self.reload(credentials or [])

    @classmethod
    def from_settings(cls, settings: "Settings", client: httpx.AsyncClient | None = None) -> "ProviderRegistry":
        """Build adapters sharing one httpx client and load credentials from settings."""
        client = client or httpx.AsyncClient()
        adapters: dict[str, ProviderAdapter] = {
            "openai": OpenAiProviderAdapter(client),
            "anthropic": AnthropicProviderAdapter(client, api_version=settings.anthropic_api_version),
            "ollama": OllamaProviderAdapter(client),
        }
        registry = cls(adapters)
        registry.reload([credential_from_config(config, settings.provider_timeout_seconds) for config in settings.get_provider_configs()])
        return registry

    @property
    def credentials(self) -> list[ProviderCredential]:
        return list(self._credentials)

    def get_adapter(self, provider_type: str) -> ProviderAdapter | None:
        return self._adapters.get(provider_type)

    def reload(self, credentials: list[ProviderCredential]) -> None:
        """Replace the credential list.

        Credentials whose id survives the reload keep their observed
        rate-limit state and lock. Turns already running hold their own
        target list and are not affected.
        """
        existing = {credential.provider_id: credential for credential in self._credentials}
        loaded: list[ProviderCredential] = []
        for credential in credentials:
            if credential.provider_type not in self._adapters:
                logger.warning(f"Skipping provider '{credential.provider_id}': no adapter for type '{credential.provider_type}'")
                continue
            previous = existing.get(credential.provider_id)
            if previous is not None:
                credential.rate_limit_state = previous.rate_limit_state
                credential.lock = previous.lock
            loaded.append(credential)
        self._credentials = sorted(loaded, key=lambda credential: credential.priority)
        logger.info(f"Loaded {len(self._credentials)} provider credentials: {[credential.provider_id for credential in self._credentials]}")

    def resolve_targets(self, model_selector: str | None = None) -> list[FailoverTarget]:
        """Ordered failover targets for a model selector.

        Raises:
            ProviderError: kind=fatal when no credential is configured or the
                selector names a provider that is not configured
        """
        if not self._credentials:
            raise ProviderError("No provider credentials configured", kind=ProviderErrorKind.FATAL, error_code="provider_not_configured")

        targets = [FailoverTarget(credential=credential, adapter=self._adapters[credential.provider_type]) for credential in self._credentials]
        if not model_selector:
            return targets

        prefix, _, model = model_selector.partition(":")
        matching = [target for target in targets if prefix in (target.credential.provider_id, target.credential.provider_type)]
        if not matching:
            if prefix in self._adapters:
                raise ProviderError(
                    f"Provider '{prefix}' is not configured",
                    kind=ProviderErrorKind.FATAL,
                    error_code="provider_not_available",
                    details={"available": [credential.provider_id for credential in self._credentials]},
                )
            # Unqualified model id (e.g. "llama3.2:3b"): applies to the primary only
            targets[0].model = model_selector
            return targets

        for target in matching:
            target.model = model or None
        return matching + [target for target in targets if target not in matching]

    async def close(self) -> None:
        closed: set[int] = set()
        for adapter in self._adapters.values():
            if id(adapter) not in closed:
                closed.add(id(adapter))
                await adapter.close()

    # =========================================================================
    # Service Configuration (Neuroglia Pattern)
    # =========================================================================

    @staticmethod
    def configure(builder: "WebApplicationBuilder") -> "WebApplicationBuilder":
        from application.settings import app_settings

        log = logging.getLogger(__name__)
        log.info("🔧 Configuring ProviderRegistry...")
        registry = ProviderRegistry.from_settings(app_settings)
        builder.services.add_singleton(ProviderRegistry, singleton=registry)
        log.info("✅ ProviderRegistry configured")
        return builder


def credential_from_config(config: dict[str, Any], default_timeout: float = 120.0) -> ProviderCredential:
    """Build a credential from one ``providers`` settings entry."""
    return ProviderCredential(
        provider_id=config.get("provider_id") or config.get("provider_type", "provider"),
        provider_type=config.get("provider_type", "openai"),
        secret_ref=config.get("api_key", ""),
        base_url=config.get("base_url", ""),
        model=config.get("model", ""),
        priority=int(config.get("priority", 100)),
        timeout=float(config.get("timeout", default_timeout)),
        stream=bool(config.get("stream", True)),
    )
