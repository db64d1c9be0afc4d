from stackwright.providers.base import ProviderRequest, ResourceProvider
from stackwright.providers.null import NullProvider
from stackwright.providers.registry import ProviderRegistry, ProviderSpec

__all__ = [
    "NullProvider",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderSpec",
    "ResourceProvider",
]
