from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

from stackwright.providers.base import ResourceProvider

ProviderFactory = Callable[[], ResourceProvider]


@dataclass(frozen=True)
class ProviderSpec:
    """Metadata describing a registered provider."""

    kind: str
    factory: ProviderFactory
    description: str | None = None


class ProviderRegistry:
    """Maps resource kinds to providers, with an optional fallback."""

    def __init__(self, default: ProviderFactory | None = None) -> None:
        self._providers: Dict[str, ProviderSpec] = {}
        self._instances: Dict[str, ResourceProvider] = {}
        self._default = default
        self._default_instance: ResourceProvider | None = None

    def register(
        self,
        kind: str,
        factory: ProviderFactory,
        *,
        description: str | None = None,
    ) -> None:
        if not kind:
            raise ValueError("Resource kind is required")
        self._providers[kind] = ProviderSpec(kind=kind, factory=factory, description=description)
        self._instances.pop(kind, None)

    def provider_for(self, kind: str) -> ResourceProvider:
        if kind in self._instances:
            return self._instances[kind]
        spec = self._providers.get(kind)
        if spec is not None:
            self._instances[kind] = spec.factory()
            return self._instances[kind]
        if self._default is None:
            raise KeyError(f"No provider registered for kind '{kind}'")
        if self._default_instance is None:
            self._default_instance = self._default()
        return self._default_instance

    def list(self) -> List[ProviderSpec]:
        return list(self._providers.values())
