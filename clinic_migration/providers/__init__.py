"""Source platform providers."""

from typing import Any, Callable, Dict

from .base import BaseProvider, ProviderSession
from .mock import MockProvider
from .rest_provider import RestProvider
from ..errors import ConfigurationError

PROVIDER_REGISTRY: Dict[str, Callable[..., BaseProvider]] = {
    "mock": MockProvider,
    "rest": RestProvider,
}


def register_provider(vendor: str, factory: Callable[..., BaseProvider]) -> None:
    PROVIDER_REGISTRY[vendor.lower()] = factory


def get_provider(vendor: str, **options: Any) -> BaseProvider:
    """
    Create the provider for a vendor.

    Raises:
        ConfigurationError: If no provider is registered for the vendor, or the
            options do not fit its constructor
    """
    factory = PROVIDER_REGISTRY.get((vendor or "").lower())
    if factory is None:
        raise ConfigurationError(f"No provider registered for vendor: {vendor}")
    try:
        return factory(**options)
    except TypeError as e:
        raise ConfigurationError(f"Invalid provider options for {vendor}: {e}") from e


__all__ = [
    "BaseProvider",
    "ProviderSession",
    "MockProvider",
    "RestProvider",
    "PROVIDER_REGISTRY",
    "register_provider",
    "get_provider",
]
