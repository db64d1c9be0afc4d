"""Reference resolution, cardinality expansion and the dependency graph."""

from stackwright.graph.builder import DependencyGraph, build_graph
from stackwright.graph.expander import CardinalityExpander, expand
from stackwright.graph.models import DependencyEdge, Expansion, ResourceInstance
from stackwright.graph.resolver import ReferenceResolver

__all__ = [
    "CardinalityExpander",
    "DependencyEdge",
    "DependencyGraph",
    "Expansion",
    "ReferenceResolver",
    "ResourceInstance",
    "build_graph",
    "expand",
]
