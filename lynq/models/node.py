"""LynqNode data structures: one materialisation of a form for one data row."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from lynq.models.form import ResourceSpec, collect_resources
from lynq.models.labels import (
    ANNOTATION_ACTIVATE,
    ANNOTATION_EXTRA,
    ANNOTATION_HOST_OR_URL,
    ANNOTATION_TEMPLATE_GENERATION,
    ANNOTATION_TEMPLATE_UPDATED_AT,
    LABEL_HUB,
    NODE_FINALIZER,
)
from lynq.models.times import format_time, parse_time

CONDITION_READY = "Ready"
CONDITION_DEGRADED = "Degraded"


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A ``metav1.Condition``."""

    type: str
    status: ConditionStatus
    reason: str
    message: str = ""
    last_transition_time: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        try:
            status = ConditionStatus(data.get("status", "Unknown"))
        except ValueError:
            status = ConditionStatus.UNKNOWN
        return cls(
            type=str(data.get("type", "")),
            status=status,
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=str(data.get("lastTransitionTime", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": str(self.status),
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


def find_condition(conditions: list[Condition], cond_type: str) -> Condition | None:
    for cond in conditions:
        if cond.type == cond_type:
            return cond
    return None


def set_condition(conditions: list[Condition], new: Condition, now: datetime) -> bool:
    """Insert or update *new* in *conditions*.

    ``lastTransitionTime`` only moves when the status changes.  Returns True
    when the status transitioned (or the condition was added).
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        new.last_transition_time = format_time(now)
        conditions.append(new)
        return True
    transitioned = existing.status != new.status
    if transitioned:
        existing.last_transition_time = format_time(now)
    existing.status = new.status
    existing.reason = new.reason
    existing.message = new.message
    return transitioned


def condition_is_true(conditions: list[Condition], cond_type: str) -> bool:
    cond = find_condition(conditions, cond_type)
    return cond is not None and cond.status == ConditionStatus.TRUE


@dataclass(frozen=True)
class AppliedResource:
    """A resource written for a node, encoded as ``Kind/Namespace/Name@id``.

    Namespace is empty for cluster-scoped kinds (``Namespace//tenant-a@ns``).
    """

    kind: str
    namespace: str
    name: str
    id: str

    def encode(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}@{self.id}"

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def parse(cls, value: str) -> AppliedResource:
        """Parse the ``Kind/Namespace/Name@id`` encoding.

        Raises:
            ValueError: if *value* does not have exactly three path segments
                and a non-empty ``@id`` suffix.
        """
        ref, sep, resource_id = value.rpartition("@")
        if not sep or not resource_id:
            raise ValueError(f"applied resource {value!r}: missing @id suffix")
        parts = ref.split("/")
        if len(parts) != 3 or not parts[0] or not parts[2]:
            raise ValueError(f"applied resource {value!r}: expected Kind/Namespace/Name@id")
        return cls(kind=parts[0], namespace=parts[1], name=parts[2], id=resource_id)


@dataclass
class NodeStatus:
    """``status`` of a LynqNode."""

    observed_generation: int = 0
    desired_resources: int = 0
    ready_resources: int = 0
    failed_resources: int = 0
    skipped_resources: int = 0
    conflicted_resources: int = 0
    skipped_resource_ids: list[str] = field(default_factory=list)
    failed_resource_ids: list[str] = field(default_factory=list)
    applied_resources: list[AppliedResource] = field(default_factory=list)
    waiting_since: dict[str, str] = field(default_factory=dict)
    conditions: list[Condition] = field(default_factory=list)

    @property
    def applied_ids(self) -> list[str]:
        return [r.id for r in self.applied_resources]

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NodeStatus:
        data = data or {}
        applied: list[AppliedResource] = []
        for entry in data.get("appliedResources") or ():
            try:
                applied.append(AppliedResource.parse(str(entry)))
            except ValueError:
                continue
        return cls(
            observed_generation=int(data.get("observedGeneration", 0) or 0),
            desired_resources=int(data.get("desiredResources", 0) or 0),
            ready_resources=int(data.get("readyResources", 0) or 0),
            failed_resources=int(data.get("failedResources", 0) or 0),
            skipped_resources=int(data.get("skippedResources", 0) or 0),
            conflicted_resources=int(data.get("conflictedResources", 0) or 0),
            skipped_resource_ids=list(data.get("skippedResourceIds") or []),
            failed_resource_ids=list(data.get("failedResourceIds") or []),
            applied_resources=applied,
            waiting_since=dict(data.get("waitingSince") or {}),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or ()],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "desiredResources": self.desired_resources,
            "readyResources": self.ready_resources,
            "failedResources": self.failed_resources,
            "skippedResources": self.skipped_resources,
            "conflictedResources": self.conflicted_resources,
            "skippedResourceIds": list(self.skipped_resource_ids),
            "failedResourceIds": list(self.failed_resource_ids),
            "appliedResources": [r.encode() for r in self.applied_resources],
            "waitingSince": dict(self.waiting_since),
            "conditions": [c.to_dict() for c in self.conditions],
        }


@dataclass
class NodeInstance:
    """A LynqNode object.

    ``resources`` is the form snapshot last admitted to this node; the hub
    sync writes it together with the ``template-generation`` annotation.
    """

    name: str
    namespace: str
    template_ref: str
    node_uid: str
    uid: str = ""
    generation: int = 1
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None
    resources: list[ResourceSpec] = field(default_factory=list)
    status: NodeStatus = field(default_factory=NodeStatus)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def has_finalizer(self) -> bool:
        return NODE_FINALIZER in self.finalizers

    @property
    def hub_id(self) -> str:
        return self.labels.get(LABEL_HUB, "")

    @property
    def template_generation(self) -> int | None:
        raw = self.annotations.get(ANNOTATION_TEMPLATE_GENERATION)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    @property
    def template_updated_at(self) -> datetime | None:
        return parse_time(self.annotations.get(ANNOTATION_TEMPLATE_UPDATED_AT))

    @property
    def ready(self) -> bool:
        """True when the node reconciled its current spec and reports Ready=True."""
        return (
            self.status.observed_generation == self.generation
            and condition_is_true(self.status.conditions, CONDITION_READY)
        )

    def variables_source(self) -> dict[str, Any]:
        """Return the raw row values stored on the node for template rendering."""
        extra_raw = self.annotations.get(ANNOTATION_EXTRA, "") or "{}"
        try:
            extra = json.loads(extra_raw)
        except json.JSONDecodeError:
            extra = {}
        if not isinstance(extra, dict):
            extra = {}
        return {
            "uid": self.node_uid,
            "activate": self.annotations.get(ANNOTATION_ACTIVATE, ""),
            "host_or_url": self.annotations.get(ANNOTATION_HOST_OR_URL, ""),
            "extra": {str(k): v for k, v in extra.items()},
        }

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> NodeInstance:
        metadata = obj.get("metadata", {}) or {}
        spec = obj.get("spec", {}) or {}
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            template_ref=str(spec.get("templateRef", "")),
            node_uid=str(spec.get("uid", "")),
            uid=str(metadata.get("uid", "")),
            generation=int(metadata.get("generation", 1) or 1),
            resource_version=str(metadata.get("resourceVersion", "")),
            labels=dict(metadata.get("labels") or {}),
            annotations=dict(metadata.get("annotations") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resources=collect_resources(spec),
            status=NodeStatus.from_dict(obj.get("status")),
            raw=copy.deepcopy(obj),
        )
