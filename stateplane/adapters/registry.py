"""
Provider registry — type tag to provider lookup.

The registry is the single point of provider management. A
declaration's type tag is resolved here once, before any state I/O;
the engine never instantiates or discovers providers itself.
"""

from __future__ import annotations

import logging

from stateplane.adapters.base import Provider
from stateplane.core.errors import UnknownResourceTypeError
from stateplane.core.models.declaration import validate_name

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Table of providers keyed by type tag."""

    def __init__(self, providers: list[Provider] | None = None):
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Register a provider under its type tag."""
        name = validate_name(provider.type, "Resource type")
        if name in self._providers:
            logger.warning("Overwriting existing provider: %s", name)
        self._providers[name] = provider
        logger.debug("Registered provider: %s", name)

    def unregister(self, type_name: str) -> None:
        """Remove a provider from the registry."""
        self._providers.pop(type_name, None)

    def get(self, type_name: str) -> Provider | None:
        """Look up a provider by type tag."""
        return self._providers.get(type_name)

    def resolve(self, type_name: str) -> Provider:
        """Look up a provider, failing if none is registered.

        Raises:
            UnknownResourceTypeError: No provider for *type_name*.
        """
        provider = self._providers.get(type_name)
        if provider is None:
            raise UnknownResourceTypeError(
                f"No provider registered for resource type '{type_name}'"
            )
        return provider

    def list_types(self) -> list[str]:
        """List all registered type tags."""
        return sorted(self._providers)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._providers

    def __len__(self) -> int:
        return len(self._providers)
