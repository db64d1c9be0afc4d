"""
Dependency graph builder.

Edges come from three sources:

- reference tokens in rendered attributes (``reference``)
- resource ``depends_on`` naming a template (``depends_on``)
- module ``depends_on`` (``module``): every instance of the upstream
  module precedes every instance of the downstream module

The execution order is a topological order where ready instances are
taken by (module ordinal, template ordinal, index), so identical inputs
always produce the identical order.
"""

from __future__ import annotations

from typing import Iterator

import structlog

from stackwright.core.errors import CycleError, LoadError
from stackwright.declarations.references import InstanceAddress, iter_references
from stackwright.graph.models import DependencyEdge, Expansion, ResourceInstance
from stackwright.graph.toposort import topological_order

logger = structlog.get_logger()


class DependencyGraph:
    """Instances keyed by address plus explicit edges between them."""

    def __init__(
        self,
        instances: dict[InstanceAddress, ResourceInstance],
        edges: list[DependencyEdge],
    ):
        self.instances = instances
        self.edges = edges
        self._successors: dict[InstanceAddress, list[InstanceAddress]] = {a: [] for a in instances}
        self._predecessors: dict[InstanceAddress, list[InstanceAddress]] = {a: [] for a in instances}
        for edge in edges:
            self._successors[edge.source].append(edge.target)
            self._predecessors[edge.target].append(edge.source)

        self.order: list[InstanceAddress] = topological_order(
            sorted(instances, key=self._key),
            self._successors,
            key=self._key,
        )
        self._position = {address: i for i, address in enumerate(self.order)}

    def _key(self, address: InstanceAddress) -> tuple[int, int, int]:
        return self.instances[address].order_key

    @property
    def reverse_order(self) -> list[InstanceAddress]:
        return list(reversed(self.order))

    def __len__(self) -> int:
        return len(self.instances)

    def __contains__(self, address: object) -> bool:
        return address in self.instances

    def __iter__(self) -> Iterator[ResourceInstance]:
        for address in self.order:
            yield self.instances[address]

    def position(self, address: InstanceAddress) -> int:
        return self._position[address]

    def dependencies_of(self, address: InstanceAddress) -> list[InstanceAddress]:
        """Direct upstream instances, in execution order."""
        return sorted(set(self._predecessors[address]), key=self.position)

    def dependents_of(self, address: InstanceAddress) -> list[InstanceAddress]:
        """Direct downstream instances, in execution order."""
        return sorted(set(self._successors[address]), key=self.position)


def build_graph(expansion: Expansion) -> DependencyGraph:
    """
    Build the resource dependency graph for an expansion.

    Raises:
        CycleError: For self-loops outside ``self_referential`` attributes
            and for cycles, naming the full cycle path
        LoadError: For tokens pointing at instances that do not exist
    """
    instances = expansion.instances
    edges: list[DependencyEdge] = []
    seen: set[tuple[InstanceAddress, InstanceAddress]] = set()

    def add(source: InstanceAddress, target: InstanceAddress, reason: str) -> None:
        if source == target:
            raise CycleError([str(source), str(target)])
        if (source, target) not in seen:
            seen.add((source, target))
            edges.append(DependencyEdge(source, target, reason))

    for instance in sorted(instances.values(), key=lambda i: i.order_key):
        for key, value in instance.attributes.items():
            for source, path in iter_references(value):
                if source not in instances:
                    raise LoadError(f"{instance.address}.{key} references unknown instance {source}")
                if key in instance.self_referential and source.template_key == instance.address.template_key:
                    continue
                add(source, instance.address, "reference")

        template = expansion.declarations.module(instance.module).template(instance.template)  # type: ignore[union-attr]
        for dep in template.depends_on if template else ():
            module, _, template_id = dep.rpartition(".")
            for upstream in expansion.instances_of(module or instance.module, template_id):
                add(upstream.address, instance.address, "depends_on")

    for upstream_module, downstream_module in _declared_module_edges(expansion):
        for target in expansion.instances_of(downstream_module):
            for source in expansion.instances_of(upstream_module):
                add(source.address, target.address, "module")

    graph = DependencyGraph(instances, edges)
    logger.debug("graph_built", instances=len(graph), edges=len(edges))
    return graph


def _declared_module_edges(expansion: Expansion) -> list[tuple[str, str]]:
    return [
        (upstream, module.name)
        for module in expansion.declarations.modules
        for upstream in module.depends_on
    ]
