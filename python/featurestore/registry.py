"""
Registry - Route media types to capability providers.

Registrations (name, media type patterns, feature key patterns, priority,
enabled) live in the cache's providers table so they survive restarts and
can be toggled from the CLI. Implementations live in this process and are
joined to registrations by name.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .cache import FeatureCache
from .errors import InvalidInput
from .models import ProviderRegistration
from .providers.base import CapabilityProvider


logger = logging.getLogger(__name__)


class CapabilityRegistry:
    """Provider implementations keyed by name, plus their persisted routing."""

    def __init__(self, cache: FeatureCache):
        self._cache = cache
        self._providers: Dict[str, CapabilityProvider] = {}

    def register(
        self,
        provider: CapabilityProvider,
        registration: Optional[ProviderRegistration] = None,
    ) -> ProviderRegistration:
        """
        Register a provider implementation.

        Without an explicit registration the provider's default routing is
        used, keeping the enabled flag of any earlier registration so a
        provider disabled by the user stays disabled across restarts.
        """
        if registration is None:
            registration = provider.registration()
            existing = self._cache.get_provider(provider.name)
            if existing is not None:
                registration.enabled = existing.enabled
        elif registration.name != provider.name:
            raise InvalidInput(
                f"Registration name {registration.name!r} does not match provider {provider.name!r}"
            )

        self._cache.register_provider(registration)
        self._providers[provider.name] = provider
        logger.debug(f"Registered provider {provider.name} for {registration.media_types}")
        return registration

    def register_routing(self, registration: ProviderRegistration) -> None:
        """Persist a registration whose implementation lives elsewhere."""
        if not registration.name or not registration.media_types:
            raise InvalidInput("Registration needs a name and at least one media type")
        self._cache.register_provider(registration)

    def resolve(
        self,
        media_type: Optional[str],
        names: Optional[List[str]] = None,
    ) -> List[Tuple[ProviderRegistration, CapabilityProvider]]:
        """
        Enabled providers accepting media_type, ordered by priority.

        Args:
            media_type: Media type of the loaded resource
            names: Restrict to these provider names (None = all)
        """
        matches = []
        for registration in self._cache.list_providers(enabled=True, media_type=media_type):
            if names is not None and registration.name not in names:
                continue
            provider = self._providers.get(registration.name)
            if provider is None:
                logger.debug(f"No implementation loaded for provider {registration.name}; skipping")
                continue
            matches.append((registration, provider))
        return matches
