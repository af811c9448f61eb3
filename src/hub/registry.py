"""Provider Registry for the MCP Hub.

Process-wide mapping from provider name to provider descriptor.
Providers are registered once at startup and read by every inbound
exchange.
"""

from typing import Optional

from shared.logging import get_logger
from shared.models import ProviderDescriptor, ProviderInfo
from hub.errors import DuplicateProvider, ProviderDisabled, UnknownProvider

logger = get_logger(__name__)


class ProviderRegistry:
    """
    Central registry for all tool providers.

    Responsibilities:
    - Register provider descriptors
    - Lookup providers by name
    - List providers for discovery endpoints

    Listing preserves registration order.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderDescriptor] = {}

    def register(self, descriptor: ProviderDescriptor) -> None:
        """
        Register a provider.

        Args:
            descriptor: Provider descriptor to register

        Raises:
            DuplicateProvider: If the name is already registered
        """
        if descriptor.name in self._providers:
            raise DuplicateProvider(descriptor.name)

        self._providers[descriptor.name] = descriptor

        logger.info(
            "Provider registered",
            provider=descriptor.name,
            version=descriptor.version,
            enabled=descriptor.enabled,
            shared=descriptor.shared,
        )

    def lookup(self, name: str) -> Optional[ProviderDescriptor]:
        """Get a provider by name, or None if absent."""
        return self._providers.get(name)

    def resolve(self, name: str) -> ProviderDescriptor:
        """
        Get a provider that can accept traffic.

        Raises:
            UnknownProvider: If the name is not registered
            ProviderDisabled: If the provider is registered but disabled
        """
        descriptor = self._providers.get(name)
        if descriptor is None:
            raise UnknownProvider(name)
        if not descriptor.enabled:
            raise ProviderDisabled(name)
        return descriptor

    def list_providers(self) -> list[ProviderInfo]:
        """List all registered providers in registration order."""
        return [
            ProviderInfo(
                name=d.name,
                description=d.description,
                version=d.version,
                enabled=d.enabled,
                status=d.status,
            )
            for d in self._providers.values()
        ]

    def descriptors(self) -> list[ProviderDescriptor]:
        return list(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers
