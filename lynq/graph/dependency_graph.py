"""In-memory dependency graph over the resources of one form.

Validation runs both at admission (form webhook / form controller) and again
inside the node reconciler before any resource is applied.  The application
order is Kahn's algorithm with ties broken by declaration order, so every
controller replica and restart applies resources in the same sequence.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable

from lynq.errors import DependencyCycleError, MissingDependencyError, ValidationError
from lynq.graph.models import GraphNode, ResolvedOrder
from lynq.models.form import ResourceSpec
from lynq.observability.logging import get_logger

_logger = get_logger("graph")


class DependencyGraph:
    """DAG of resource ids; edges point from a dependency to its dependents."""

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._dependents: dict[str, list[str]] = {}

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(n.depend_ids) for n in self._nodes.values())

    def add(self, resource_id: str, depend_ids: Iterable[str] = ()) -> None:
        """Declare *resource_id*.  Duplicate dependency entries are collapsed.

        Raises:
            ValidationError: if the id is empty or already declared.
        """
        if not resource_id:
            raise ValidationError("resource id must not be empty")
        if resource_id in self._nodes:
            raise ValidationError(f"duplicate resource id {resource_id!r}")
        deps = tuple(dict.fromkeys(depend_ids))
        self._nodes[resource_id] = GraphNode(id=resource_id, position=len(self._nodes), depend_ids=deps)
        self._dependents.setdefault(resource_id, [])
        for dep in deps:
            self._dependents.setdefault(dep, []).append(resource_id)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def ids(self) -> list[str]:
        """Declared ids in declaration order."""
        return list(self._nodes)

    def dependencies(self, resource_id: str) -> tuple[str, ...]:
        return self._nodes[resource_id].depend_ids

    def dependents(self, resource_id: str) -> list[str]:
        return list(self._dependents.get(resource_id, ()))

    def validate(self) -> None:
        """Check references, self-dependencies and cycles.

        Raises:
            MissingDependencyError: a dependency id is not declared.
            DependencyCycleError: self-reference or cycle; carries the id chain.
        """
        for node in self._nodes.values():
            for dep in node.depend_ids:
                if dep not in self._nodes:
                    raise MissingDependencyError(node.id, dep)
        for node in self._nodes.values():
            if node.id in node.depend_ids:
                raise DependencyCycleError([node.id, node.id])
        cycle = self._find_cycle()
        if cycle:
            raise DependencyCycleError(cycle)

    def _find_cycle(self) -> list[str] | None:
        """Depth-first search with a recursion stack; returns the first cycle found."""
        visited: set[str] = set()
        on_stack: set[str] = set()
        path: list[str] = []

        def visit(node_id: str) -> list[str] | None:
            visited.add(node_id)
            on_stack.add(node_id)
            path.append(node_id)
            for dep in self._nodes[node_id].depend_ids:
                if dep in on_stack:
                    # Back edge: the cycle is the stack suffix starting at dep
                    start = path.index(dep)
                    return [*path[start:], dep]
                if dep not in visited:
                    found = visit(dep)
                    if found:
                        return found
            on_stack.discard(node_id)
            path.pop()
            return None

        for node_id in self._nodes:
            if node_id not in visited:
                found = visit(node_id)
                if found:
                    return found
        return None

    def topological_order(self) -> ResolvedOrder:
        """Return ids so that every id follows all of its dependencies.

        Raises:
            ValidationError: the graph is invalid (see :meth:`validate`).
        """
        self.validate()
        indegree = {node_id: len(node.depend_ids) for node_id, node in self._nodes.items()}
        ready = [(node.position, node.id) for node in self._nodes.values() if indegree[node.id] == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for dependent in self._dependents.get(node_id, ()):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, (self._nodes[dependent].position, dependent))
        if len(order) != len(self._nodes):
            # unreachable after validate()
            raise ValidationError("dependency graph could not be fully ordered")
        return ResolvedOrder(ids=order)


def build_graph(resources: Iterable[ResourceSpec]) -> DependencyGraph:
    """Build a graph from declared resources (not yet validated).

    Raises:
        ValidationError: on empty or duplicate ids.
    """
    graph = DependencyGraph()
    for resource in resources:
        graph.add(resource.id, resource.depend_ids)
    _logger.debug("dependency_graph_built", nodes=graph.node_count, edges=graph.edge_count)
    return graph
