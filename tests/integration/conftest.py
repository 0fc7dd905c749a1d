"""Shared fixtures for Lynq integration tests.

Provides an in-memory cluster implementing :class:`KubeClient`, a manual
clock and object factories so reconcilers can be exercised end to end
without a real Kubernetes API server.
"""

from __future__ import annotations

import copy
import itertools
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from lynq.cluster.client import KubeClient, object_ref
from lynq.cluster.events import EventRecorder
from lynq.controller.node import NodeReconciler
from lynq.controller.result import ReconcileResult
from lynq.errors import ConcurrentModificationError, ResourceNotFoundError
from lynq.models.config import ControllerConfig
from lynq.models.labels import GROUP_VERSION, KIND_FORM, KIND_HUB, KIND_NODE, LABEL_HUB, NODE_FINALIZER
from lynq.models.times import format_time

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

_START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = _START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# In-memory cluster
# ---------------------------------------------------------------------------

Key = tuple[str, str, str]


def _merge_patch(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """RFC 7386 JSON merge patch."""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge_patch(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _matches(obj: dict[str, Any], selector: str) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in filter(None, selector.split(",")):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeCluster(KubeClient):
    """Objects keyed by (kind, namespace, name); apiVersion is ignored.

    ``failures[(verb, kind)]`` raises the given exception once on the next
    matching call.  Keys in ``apply_conflicts`` make a non-forced
    server-side apply fail with a field manager conflict.
    """

    def __init__(self) -> None:
        self.objects: dict[Key, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.apply_conflicts: set[Key] = set()
        self.strategic_patches: list[str] = []
        self._rv = itertools.count(1)
        self._uid = itertools.count(1)

    # -- helpers ----------------------------------------------------------

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uid)}")
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = str(next(self._rv))
        metadata.setdefault("creationTimestamp", format_time(_START))
        _, kind, namespace, name = object_ref(obj)
        self.objects[(kind, namespace, name)] = obj
        return obj

    def obj(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def set_status(self, kind: str, namespace: str, name: str, status: dict[str, Any]) -> None:
        self.objects[(kind, namespace, name)]["status"] = copy.deepcopy(status)

    def events(self, reason: str | None = None) -> list[dict[str, Any]]:
        found = [o for (kind, _, _), o in self.objects.items() if kind == "Event"]
        return [o for o in found if reason is None or o["reason"] == reason]

    def count(self, verb: str, kind: str | None = None) -> int:
        return sum(1 for v, k, _ in self.calls if v == verb and (kind is None or k == kind))

    def _record(self, verb: str, kind: str, name: str) -> None:
        self.calls.append((verb, kind, name))
        exc = self.failures.pop((verb, kind), None)
        if exc is not None:
            raise exc

    def _bump(self, obj: dict[str, Any], before: dict[str, Any] | None) -> None:
        metadata = obj["metadata"]
        metadata["resourceVersion"] = str(next(self._rv))
        if before is not None and before.get("spec") != obj.get("spec"):
            metadata["generation"] = int(before["metadata"].get("generation", 1)) + 1

    # -- KubeClient -------------------------------------------------------

    async def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        self._record("get", kind, name)
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def list(
        self, api_version: str, kind: str, namespace: str = "", label_selector: str = ""
    ) -> list[dict[str, Any]]:
        self._record("list", kind, "*")
        return [
            copy.deepcopy(o)
            for (k, ns, _), o in sorted(self.objects.items())
            if k == kind and (not namespace or ns == namespace) and _matches(o, label_selector)
        ]

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        _, kind, namespace, name = object_ref(obj)
        self._record("create", kind, name)
        if (kind, namespace, name) in self.objects:
            raise ConcurrentModificationError(f"{kind} {namespace}/{name} already exists")
        return copy.deepcopy(self.put(obj))

    async def apply(self, obj: dict[str, Any], field_manager: str, force: bool = False) -> dict[str, Any]:
        _, kind, namespace, name = object_ref(obj)
        self._record("apply", kind, name)
        key = (kind, namespace, name)
        if key in self.apply_conflicts and not force:
            raise ConcurrentModificationError(f"apply {kind} {namespace}/{name}: conflict")
        current = self.objects.get(key)
        if current is None:
            return copy.deepcopy(self.put(obj))
        before = copy.deepcopy(current)
        body = copy.deepcopy(obj)
        body.get("metadata", {}).pop("resourceVersion", None)
        _merge_patch(current, body)
        self._bump(current, before)
        return copy.deepcopy(current)

    async def patch(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        body: dict[str, Any],
        strategic: bool = False,
    ) -> dict[str, Any]:
        self._record("patch", kind, name)
        if strategic:
            self.strategic_patches.append(name)
        current = self.objects.get((kind, namespace, name))
        if current is None:
            raise ResourceNotFoundError(kind, namespace, name)
        before = copy.deepcopy(current)
        patch = copy.deepcopy(body)
        (patch.get("metadata") or {}).pop("resourceVersion", None)
        _merge_patch(current, patch)
        self._bump(current, before)
        return copy.deepcopy(current)

    async def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        _, kind, namespace, name = object_ref(obj)
        self._record("replace", kind, name)
        key = (kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            raise ResourceNotFoundError(kind, namespace, name)
        rv = (obj.get("metadata") or {}).get("resourceVersion")
        if rv and rv != current["metadata"]["resourceVersion"]:
            raise ConcurrentModificationError(f"replace {kind} {namespace}/{name}: stale resourceVersion")
        body = copy.deepcopy(obj)
        body["status"] = copy.deepcopy(current.get("status"))
        if body["status"] is None:
            body.pop("status")
        for field_name in ("uid", "creationTimestamp", "generation", "deletionTimestamp"):
            if field_name in current["metadata"]:
                body["metadata"][field_name] = current["metadata"][field_name]
        self._bump(body, current)
        if body["metadata"].get("deletionTimestamp") and not body["metadata"].get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = body
        return copy.deepcopy(body)

    async def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        self._record("delete", kind, name)
        key = (kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            return False
        if current["metadata"].get("finalizers"):
            current["metadata"]["deletionTimestamp"] = format_time(_START)
            current["metadata"]["resourceVersion"] = str(next(self._rv))
        else:
            del self.objects[key]
        return True

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        _, kind, namespace, name = object_ref(obj)
        self._record("update_status", kind, name)
        current = self.objects.get((kind, namespace, name))
        if current is None:
            raise ResourceNotFoundError(kind, namespace, name)
        rv = (obj.get("metadata") or {}).get("resourceVersion")
        if rv and rv != current["metadata"]["resourceVersion"]:
            raise ConcurrentModificationError(f"status {kind} {namespace}/{name}: stale resourceVersion")
        current["status"] = copy.deepcopy(obj.get("status"))
        current["metadata"]["resourceVersion"] = str(next(self._rv))
        return copy.deepcopy(current)


# ---------------------------------------------------------------------------
# Object factories
# ---------------------------------------------------------------------------


def config_map(rid: str, depends: list[str] | None = None, **fields: Any) -> dict[str, Any]:
    """A ``configMaps`` entry named ``<uid>-<rid>``."""
    entry: dict[str, Any] = {
        "id": rid,
        "nameTemplate": "{{ uid }}-" + rid,
        "spec": {"data": {"owner": "{{ uid }}"}},
    }
    if depends:
        entry["dependIds"] = depends
    entry.update(fields)
    return entry


def deployment(rid: str, depends: list[str] | None = None, **fields: Any) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": rid,
        "nameTemplate": "{{ uid }}-" + rid,
        "spec": {
            "spec": {
                "replicas": 1,
                "selector": {"matchLabels": {"app": "{{ uid }}"}},
                "template": {
                    "metadata": {"labels": {"app": "{{ uid }}"}},
                    "spec": {"containers": [{"name": "app", "image": "nginx:1.27"}]},
                },
            }
        },
    }
    if depends:
        entry["dependIds"] = depends
    entry.update(fields)
    return entry


def make_node(
    name: str = "acme-web",
    namespace: str = "default",
    uid: str = "acme",
    resources: dict[str, list[dict[str, Any]]] | None = None,
    finalizer: bool = True,
    hub: str = "tenants",
    template_ref: str = "web",
    annotations: dict[str, str] | None = None,
    generation: int = 1,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "uid": f"node-{name}",
        "generation": generation,
        "labels": {LABEL_HUB: hub},
        "annotations": {
            "lynq.sh/activate": "true",
            "lynq.sh/hostOrUrl": "https://acme.example.com",
            "lynq.sh/extra": '{"plan": "gold"}',
            "lynq.sh/template-generation": "1",
            **(annotations or {}),
        },
    }
    if finalizer:
        metadata["finalizers"] = [NODE_FINALIZER]
    return {
        "apiVersion": GROUP_VERSION,
        "kind": KIND_NODE,
        "metadata": metadata,
        "spec": {"templateRef": template_ref, "uid": uid, **(resources or {})},
    }


def make_form(
    name: str = "web",
    namespace: str = "default",
    hub: str = "tenants",
    resources: dict[str, list[dict[str, Any]]] | None = None,
    rollout: dict[str, Any] | None = None,
    generation: int = 1,
) -> dict[str, Any]:
    spec: dict[str, Any] = {"hubId": hub, **(resources or {"configMaps": [config_map("config")]})}
    if rollout is not None:
        spec["rollout"] = rollout
    return {
        "apiVersion": GROUP_VERSION,
        "kind": KIND_FORM,
        "metadata": {"name": name, "namespace": namespace, "generation": generation, "uid": f"form-{name}"},
        "spec": spec,
    }


def make_hub(name: str = "tenants", namespace: str = "default", source_type: str = "memory") -> dict[str, Any]:
    return {
        "apiVersion": GROUP_VERSION,
        "kind": KIND_HUB,
        "metadata": {"name": name, "namespace": namespace, "generation": 1},
        "spec": {
            "source": {"type": source_type, "syncIntervalSeconds": 30},
            "valueMappings": {"uid": "tenant_id", "activate": "is_active", "hostOrUrl": "url"},
            "extraValueMappings": {"plan": "plan"},
        },
    }


def deployment_ready_status(generation: int = 1, replicas: int = 1) -> dict[str, Any]:
    return {
        "observedGeneration": generation,
        "replicas": replicas,
        "updatedReplicas": replicas,
        "readyReplicas": replicas,
        "availableReplicas": replicas,
    }


async def reconcile_node(
    reconciler: NodeReconciler, name: str = "acme-web", namespace: str = "default"
) -> ReconcileResult:
    return await reconciler.reconcile(namespace, name)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def controller_config() -> ControllerConfig:
    return ControllerConfig(resync_seconds=30, readiness_poll_seconds=5, status_update_retries=3)


@pytest.fixture()
def recorder(cluster: FakeCluster, clock: FakeClock) -> EventRecorder:
    return EventRecorder(cluster, now_fn=clock)


@pytest.fixture()
def node_reconciler(
    cluster: FakeCluster, recorder: EventRecorder, controller_config: ControllerConfig, clock: FakeClock
) -> NodeReconciler:
    return NodeReconciler(cluster, recorder, controller_config, now_fn=clock)
