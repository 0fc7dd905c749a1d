"""LynqForm data structures: resource templates, policies and rollout config."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from lynq.models.rollout import RolloutConfig, RolloutState

DEFAULT_TIMEOUT_SECONDS = 300


class CreationPolicy(StrEnum):
    """When a resource is written."""

    WHEN_NEEDED = "WhenNeeded"
    ONCE = "Once"


class DeletionPolicy(StrEnum):
    """What happens to a resource when it leaves the template or its node is deleted."""

    DELETE = "Delete"
    RETAIN = "Retain"


class ConflictPolicy(StrEnum):
    """How to treat an existing object that this node does not own."""

    STUCK = "Stuck"
    FORCE = "Force"


class PatchStrategy(StrEnum):
    """Write mode used when applying a resource."""

    APPLY = "apply"
    MERGE = "merge"
    REPLACE = "replace"


# Resource lists of LynqFormSpec / LynqNodeSpec in declaration order.
# Value is (apiVersion, kind); None means the manifest carries its own.
RESOURCE_FIELDS: dict[str, tuple[str, str] | None] = {
    "serviceAccounts": ("v1", "ServiceAccount"),
    "deployments": ("apps/v1", "Deployment"),
    "statefulSets": ("apps/v1", "StatefulSet"),
    "daemonSets": ("apps/v1", "DaemonSet"),
    "services": ("v1", "Service"),
    "ingresses": ("networking.k8s.io/v1", "Ingress"),
    "configMaps": ("v1", "ConfigMap"),
    "secrets": ("v1", "Secret"),
    "persistentVolumeClaims": ("v1", "PersistentVolumeClaim"),
    "jobs": ("batch/v1", "Job"),
    "cronJobs": ("batch/v1", "CronJob"),
    "podDisruptionBudgets": ("policy/v1", "PodDisruptionBudget"),
    "networkPolicies": ("networking.k8s.io/v1", "NetworkPolicy"),
    "horizontalPodAutoscalers": ("autoscaling/v2", "HorizontalPodAutoscaler"),
    "namespaces": ("v1", "Namespace"),
    "manifests": None,
}

BUILTIN_API_VERSIONS = {gvk[1]: gvk[0] for gvk in RESOURCE_FIELDS.values() if gvk is not None}


def api_version_for_kind(kind: str) -> str:
    """apiVersion of a built-in kind; empty for kinds resolved through discovery."""
    return BUILTIN_API_VERSIONS.get(kind, "")


CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "CustomResourceDefinition",
        "PriorityClass",
    }
)


def _enum_value(enum_cls: type[StrEnum], raw: Any, default: StrEnum) -> Any:
    if raw in (None, ""):
        return default
    for member in enum_cls:
        if member.value.lower() == str(raw).lower():
            return member
    raise ValueError(f"invalid {enum_cls.__name__} value: {raw!r}")


@dataclass(frozen=True)
class ResourceSpec:
    """One declared resource of a form (``TResource``).

    ``body`` is the raw manifest template; string leaves are rendered with the
    node's variables before the object is written.
    """

    id: str
    kind: str
    api_version: str
    name_template: str = ""
    target_namespace: str = ""
    labels_template: dict[str, str] = field(default_factory=dict)
    annotations_template: dict[str, str] = field(default_factory=dict)
    depend_ids: tuple[str, ...] = ()
    creation_policy: CreationPolicy = CreationPolicy.WHEN_NEEDED
    deletion_policy: DeletionPolicy = DeletionPolicy.DELETE
    conflict_policy: ConflictPolicy = ConflictPolicy.STUCK
    patch_strategy: PatchStrategy = PatchStrategy.APPLY
    wait_for_ready: bool = True
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    skip_on_dependency_failure: bool = True
    ignore_fields: tuple[str, ...] = ()
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_gvk: tuple[str, str] | None = None) -> ResourceSpec:
        """Build a ResourceSpec from one entry of a kind-grouped resource list.

        Raises:
            ValueError: if a policy value is unknown or the kind cannot be determined.
        """
        body = copy.deepcopy(data.get("spec") or {})
        if not isinstance(body, dict):
            raise ValueError(f"resource {data.get('id', '')!r}: spec must be an object")
        api_version = str(body.get("apiVersion") or (default_gvk[0] if default_gvk else ""))
        kind = str(body.get("kind") or (default_gvk[1] if default_gvk else ""))
        if not kind or not api_version:
            raise ValueError(f"resource {data.get('id', '')!r}: manifest must declare apiVersion and kind")
        timeout = data.get("timeoutSeconds")
        skip = data.get("skipOnDependencyFailure")
        wait = data.get("waitForReady")
        return cls(
            id=str(data.get("id", "")),
            kind=kind,
            api_version=api_version,
            name_template=str(data.get("nameTemplate", "")),
            target_namespace=str(data.get("targetNamespace", "") or ""),
            labels_template=dict(data.get("labelsTemplate") or {}),
            annotations_template=dict(data.get("annotationsTemplate") or {}),
            depend_ids=tuple(str(d) for d in data.get("dependIds") or ()),
            creation_policy=_enum_value(CreationPolicy, data.get("creationPolicy"), CreationPolicy.WHEN_NEEDED),
            deletion_policy=_enum_value(DeletionPolicy, data.get("deletionPolicy"), DeletionPolicy.DELETE),
            conflict_policy=_enum_value(ConflictPolicy, data.get("conflictPolicy"), ConflictPolicy.STUCK),
            patch_strategy=_enum_value(PatchStrategy, data.get("patchStrategy"), PatchStrategy.APPLY),
            wait_for_ready=True if wait is None else bool(wait),
            timeout_seconds=DEFAULT_TIMEOUT_SECONDS if timeout in (None, 0) else int(timeout),
            skip_on_dependency_failure=True if skip is None else bool(skip),
            ignore_fields=tuple(str(p) for p in data.get("ignoreFields") or ()),
            body=body,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "nameTemplate": self.name_template,
            "creationPolicy": str(self.creation_policy),
            "deletionPolicy": str(self.deletion_policy),
            "conflictPolicy": str(self.conflict_policy),
            "patchStrategy": str(self.patch_strategy),
            "waitForReady": self.wait_for_ready,
            "timeoutSeconds": self.timeout_seconds,
            "skipOnDependencyFailure": self.skip_on_dependency_failure,
            "spec": copy.deepcopy(self.body),
        }
        if self.target_namespace:
            out["targetNamespace"] = self.target_namespace
        if self.labels_template:
            out["labelsTemplate"] = dict(self.labels_template)
        if self.annotations_template:
            out["annotationsTemplate"] = dict(self.annotations_template)
        if self.depend_ids:
            out["dependIds"] = list(self.depend_ids)
        if self.ignore_fields:
            out["ignoreFields"] = list(self.ignore_fields)
        return out


def collect_resources(spec: dict[str, Any]) -> list[ResourceSpec]:
    """Flatten the kind-grouped resource lists of a form or node spec.

    The returned order is the declaration order used to break ties in the
    dependency graph's topological sort.
    """
    resources: list[ResourceSpec] = []
    for list_field, gvk in RESOURCE_FIELDS.items():
        for entry in spec.get(list_field) or ():
            resources.append(ResourceSpec.from_dict(entry, gvk))
    return resources


def resource_lists(spec: dict[str, Any]) -> dict[str, Any]:
    """Return only the kind-grouped resource lists of *spec* (deep-copied)."""
    return {k: copy.deepcopy(spec[k]) for k in RESOURCE_FIELDS if spec.get(k)}


@dataclass
class Form:
    """A LynqForm: named, versioned set of resource templates for one hub."""

    name: str
    namespace: str
    hub_id: str
    generation: int = 1
    resources: list[ResourceSpec] = field(default_factory=list)
    rollout: RolloutConfig | None = None
    raw_spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    resource_version: str = ""
    uid: str = ""

    @property
    def max_skew(self) -> int:
        return self.rollout.max_skew if self.rollout else 0

    @property
    def rollout_status(self) -> RolloutState | None:
        return RolloutState.from_dict(self.status.get("rollout"))

    @property
    def resource_ids(self) -> list[str]:
        return [r.id for r in self.resources]

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Form:
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {}) or {}
        return cls(
            name=str(metadata.get("name", "")),
            namespace=str(metadata.get("namespace", "")),
            hub_id=str(spec.get("hubId", "")),
            generation=int(metadata.get("generation", 1) or 1),
            resources=collect_resources(spec),
            rollout=RolloutConfig.from_dict(spec.get("rollout")),
            raw_spec=copy.deepcopy(spec),
            status=copy.deepcopy(obj.get("status") or {}),
            resource_version=str(metadata.get("resourceVersion", "")),
            uid=str(metadata.get("uid", "")),
        )
