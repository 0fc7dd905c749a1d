"""Data structures for the resource dependency graph."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field


@dataclass(frozen=True)
class GraphNode:
    """A declared resource in the dependency graph of one form."""

    id: str
    position: int  # declaration order, used to break ties
    depend_ids: tuple[str, ...] = ()


@dataclass
class ResolvedOrder:
    """Result of resolving a graph: ids in application order."""

    ids: list[str] = field(default_factory=list)

    def index(self, resource_id: str) -> int:
        return self.ids.index(resource_id)

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids)

    def __len__(self) -> int:
        return len(self.ids)
