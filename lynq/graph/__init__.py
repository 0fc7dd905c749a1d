"""Dependency graph resolver for a form's resources.

Builds a DAG from resource ids and their ``dependIds``, rejects missing
references and cycles, and yields a deterministic application order.
"""

from lynq.graph.dependency_graph import DependencyGraph, build_graph
from lynq.graph.models import GraphNode, ResolvedOrder

__all__ = [
    "DependencyGraph",
    "GraphNode",
    "ResolvedOrder",
    "build_graph",
]
