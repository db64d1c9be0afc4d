from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from stackwright.declarations.references import InstanceAddress
from stackwright.state.models import ResourceState


@dataclass(frozen=True)
class ProviderRequest:
    """Desired attributes for one instance, with references already resolved."""

    address: InstanceAddress
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(Protocol):
    """
    Contract for the external system that realizes resources of some kinds.

    Each call returns the observed attributes of the resource (including
    provider-assigned ones such as ``id``). Failures raise
    ProviderEffectError.
    """

    async def create(self, request: ProviderRequest) -> dict[str, Any]:
        ...

    async def update(self, request: ProviderRequest, prior: ResourceState) -> dict[str, Any]:
        ...

    async def delete(self, state: ResourceState) -> None:
        ...
