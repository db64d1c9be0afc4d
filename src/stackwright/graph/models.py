"""
Expansion and dependency graph models.

Instances live in an arena keyed by their stable InstanceAddress; edges
are explicit data over those keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from stackwright.declarations.models import Declarations, LifecyclePolicy, Profile
from stackwright.declarations.references import ABSENT, InstanceAddress


@dataclass(frozen=True)
class ResourceInstance:
    """One concrete expansion of a ResourceTemplate."""

    address: InstanceAddress
    kind: str
    attributes: dict[str, Any]
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)
    self_referential: frozenset[str] = frozenset()
    order_key: tuple[int, int, int] = (0, 0, 0)
    sensitive_attributes: frozenset[str] = frozenset()

    @property
    def module(self) -> str:
        return self.address.module

    @property
    def template(self) -> str:
        return self.address.template


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` must exist before ``target`` is created or updated."""

    source: InstanceAddress
    target: InstanceAddress
    reason: str = "reference"

    def __str__(self) -> str:
        return f"{self.source} -> {self.target}"


@dataclass
class Expansion:
    """Fully resolved and expanded declarations for one profile."""

    declarations: Declarations
    profile: Profile
    parameters: dict[str, Any]
    module_order: list[str]
    module_edges: list[tuple[str, str]]
    module_inputs: dict[str, dict[str, Any]]
    outputs: dict[str, dict[str, Any]]
    cardinality: dict[tuple[str, str], int]
    instances: dict[InstanceAddress, ResourceInstance]
    sensitive_outputs: set[tuple[str, str]] = field(default_factory=set)

    def instances_of(self, module: str, template: str | None = None) -> list[ResourceInstance]:
        return [
            instance
            for instance in self.instances.values()
            if instance.module == module and (template is None or instance.template == template)
        ]

    @property
    def instance_count(self) -> int:
        return len(self.instances)

    def reported_outputs(self, mask_sensitive: bool = False) -> dict[str, dict[str, Any]]:
        """Module outputs with absent values as ``None``."""
        return {
            module: {
                name: "(sensitive)" if mask_sensitive and (module, name) in self.sensitive_outputs
                else _absent_to_none(value)
                for name, value in values.items()
            }
            for module, values in self.outputs.items()
        }


def _absent_to_none(value: Any) -> Any:
    if value is ABSENT:
        return None
    if isinstance(value, dict):
        return {k: _absent_to_none(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_absent_to_none(v) for v in value]
    return value
