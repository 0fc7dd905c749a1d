"""LynqHub data structures: a data-source connection and its rows."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

DEFAULT_SYNC_INTERVAL_SECONDS = 60

_TRUTHY = {"1", "true", "yes", "y", "on", "t", "active"}


@dataclass(frozen=True)
class NodeRow:
    """One row from a hub's data source."""

    uid: str
    activate: str = "true"
    host_or_url: str = ""
    extra: dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.activate.strip().lower() in _TRUTHY


@dataclass
class Hub:
    """A LynqHub: where rows come from and how columns map to variables."""

    name: str
    namespace: str
    source_type: str = ""
    source: dict[str, Any] = field(default_factory=dict)
    value_mappings: dict[str, str] = field(default_factory=dict)
    extra_value_mappings: dict[str, str] = field(default_factory=dict)
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    generation: int = 1
    status: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Hub:
        metadata = obj.get("metadata", {}) or {}
        spec = obj.get("spec", {}) or {}
        source = copy.deepcopy(spec.get("source") or {})
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            source_type=str(source.get("type", "")),
            source=source,
            value_mappings=dict(spec.get("valueMappings") or {}),
            extra_value_mappings=dict(spec.get("extraValueMappings") or {}),
            sync_interval_seconds=int(
                source.get("syncIntervalSeconds", DEFAULT_SYNC_INTERVAL_SECONDS) or DEFAULT_SYNC_INTERVAL_SECONDS
            ),
            generation=int(metadata.get("generation", 1) or 1),
            status=copy.deepcopy(obj.get("status") or {}),
        )
