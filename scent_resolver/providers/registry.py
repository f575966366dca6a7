"""
Provider registry.

Maps provider identities to adapter constructors and reports which providers are usable.
"""

import logging
from typing import Callable, Dict, List, Mapping, Optional, Union

from ..config.loader import ProviderSettings, ResolverConfig
from ..core.backoff import BackoffPolicy
from ..core.pricing import RateTable
from ..core.types import ProviderIdentity
from ..errors import ProviderUnavailable, UnknownProvider
from .anthropic_adapter import AnthropicAdapter
from .base import ProviderAdapter
from .gemini_adapter import GeminiAdapter
from .openai_adapter import OpenAIAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderSettings, RateTable, BackoffPolicy], ProviderAdapter]

DEFAULT_FACTORIES: Dict[ProviderIdentity, AdapterFactory] = {
    ProviderIdentity.OPENAI: OpenAIAdapter,
    ProviderIdentity.ANTHROPIC: AnthropicAdapter,
    ProviderIdentity.GEMINI: GeminiAdapter,
}


class ProviderRegistry:
    """Holds configured adapters and instantiates them on demand.

    Args:
        config: Resolver configuration with provider settings and rate tables
        factories: Constructor per identity; defaults to the built-in adapters
    """

    def __init__(
        self,
        config: ResolverConfig,
        factories: Optional[Mapping[ProviderIdentity, AdapterFactory]] = None
    ):
        self.config = config
        self.factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self.backoff = BackoffPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
        )
        self._adapters: Dict[ProviderIdentity, ProviderAdapter] = {}

    def list_available(self) -> List[ProviderIdentity]:
        """Providers whose credentials are configured, in registration order."""
        return [
            identity for identity in self.factories
            if self.config.provider_settings(identity.value).is_configured
        ]

    def get_default(self) -> Optional[ProviderIdentity]:
        """The configured default provider, or None if it is not available."""
        identity = ProviderIdentity.parse(self.config.default_provider)
        if identity in self.list_available():
            return identity
        logger.debug("Default provider %s is not available", identity.value)
        return None

    def create(self, identity: Union[ProviderIdentity, str]) -> ProviderAdapter:
        """Get the adapter for a provider, constructing it on first use.

        Raises:
            UnknownProvider: If the identity is not recognized
            ProviderUnavailable: If the provider is known but not configured
        """
        identity = ProviderIdentity.parse(identity)
        if identity not in self.factories:
            raise UnknownProvider(identity.value)
        if identity in self._adapters:
            return self._adapters[identity]

        settings = self.config.provider_settings(identity.value)
        if not settings.is_configured:
            raise ProviderUnavailable(identity.value)

        adapter = self.factories[identity](settings, self.config.rate_table(identity.value), self.backoff)
        self._adapters[identity] = adapter
        return adapter

    async def aclose(self) -> None:
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            await adapter.aclose()
