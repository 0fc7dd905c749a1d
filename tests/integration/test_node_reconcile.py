"""End-to-end LynqNode reconcile passes against the in-memory cluster."""

from __future__ import annotations

from typing import Any

import pytest

from lynq.controller.node import NodeReconciler
from lynq.errors import TransientAPIError
from lynq.models.labels import (
    ANNOTATION_CREATED_ONCE,
    ANNOTATION_DELETION_POLICY,
    ANNOTATION_ORPHANED_AT,
    ANNOTATION_ORPHANED_REASON,
    GROUP_VERSION,
    KIND_NODE,
    LABEL_NODE,
    LABEL_NODE_NAMESPACE,
    LABEL_ORPHANED,
    NODE_FINALIZER,
)
from lynq.models.times import format_time

from .conftest import (
    FakeClock,
    FakeCluster,
    config_map,
    deployment,
    deployment_ready_status,
    make_node,
    reconcile_node,
)

NODE_KEY = (KIND_NODE, "default", "acme-web")


def _status(cluster: FakeCluster) -> dict[str, Any]:
    return cluster.objects[NODE_KEY].get("status") or {}


def _condition(cluster: FakeCluster, cond_type: str) -> dict[str, Any]:
    for cond in _status(cluster).get("conditions", []):
        if cond["type"] == cond_type:
            return cond
    raise AssertionError(f"condition {cond_type} not set")


def _set_resources(cluster: FakeCluster, **resources: list[dict[str, Any]]) -> None:
    spec = cluster.objects[NODE_KEY]["spec"]
    for list_field in ("configMaps", "deployments"):
        spec.pop(list_field, None)
    spec.update(resources)


def _labels(obj: dict[str, Any] | None) -> dict[str, str]:
    assert obj is not None
    return obj["metadata"].get("labels") or {}


def _annotations(obj: dict[str, Any] | None) -> dict[str, str]:
    assert obj is not None
    return obj["metadata"].get("annotations") or {}


# ---------------------------------------------------------------------------
# Lifecycle entry points
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_missing_node_is_done(self, node_reconciler: NodeReconciler) -> None:
        """Reconciling a deleted node is a no-op."""
        result = await reconcile_node(node_reconciler, "nobody")
        assert result.requeue_after is None

    async def test_first_pass_adds_finalizer_only(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """The first pass only adds the finalizer and requeues."""
        cluster.put(make_node(finalizer=False, resources={"configMaps": [config_map("config")]}))

        result = await reconcile_node(node_reconciler)

        assert result.requeue_after == 0
        assert cluster.objects[NODE_KEY]["metadata"]["finalizers"] == [NODE_FINALIZER]
        assert cluster.obj("ConfigMap", "default", "acme-config") is None

    async def test_unparseable_snapshot_is_not_retried(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """A corrupt form snapshot is reported without retrying."""
        cluster.put(make_node(resources={"configMaps": [config_map("config", creationPolicy="Sometimes")]}))

        result = await reconcile_node(node_reconciler)

        assert result.requeue_after is None
        assert cluster.count("apply") == 0


# ---------------------------------------------------------------------------
# Ordered apply
# ---------------------------------------------------------------------------


class TestOrderedApply:
    async def test_applies_dependencies_first(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """Dependencies are written before their dependents."""
        cluster.put(make_node(resources={"configMaps": [config_map("b", depends=["a"]), config_map("a")]}))

        result = await reconcile_node(node_reconciler)

        applied = [name for verb, kind, name in cluster.calls if verb == "apply" and kind == "ConfigMap"]
        assert applied == ["acme-a", "acme-b"]
        status = _status(cluster)
        assert status["desiredResources"] == 2
        assert status["readyResources"] == 2
        # Declaration order, not application order
        assert status["appliedResources"] == ["ConfigMap/default/acme-b@b", "ConfigMap/default/acme-a@a"]
        assert _condition(cluster, "Ready")["status"] == "True"
        assert _condition(cluster, "Degraded")["status"] == "False"
        assert result.requeue_after == 30

    async def test_written_object_carries_tracking_metadata(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Applied objects get the node labels, annotations and owner."""
        cluster.put(make_node(resources={"configMaps": [config_map("config")]}))

        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-config")
        assert obj is not None
        assert obj["data"] == {"owner": "acme"}
        assert _labels(obj)[LABEL_NODE] == "acme-web"
        assert _labels(obj)[LABEL_NODE_NAMESPACE] == "default"
        assert _annotations(obj)[ANNOTATION_DELETION_POLICY] == "Delete"
        assert obj["metadata"]["ownerReferences"][0]["uid"] == "node-acme-web"

    async def test_retained_resource_has_no_owner_reference(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Retain-policy objects are tracked by label, not ownerReference."""
        cluster.put(make_node(resources={"configMaps": [config_map("config", deletionPolicy="Retain")]}))

        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-config")
        assert obj is not None
        assert "ownerReferences" not in obj["metadata"]
        assert _labels(obj)[LABEL_NODE] == "acme-web"

    async def test_row_variables_and_typed_helpers(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """Row columns and typed helpers are available to templates."""
        entry = config_map(
            "vars",
            spec={"data": {"host": "{{ host }}", "plan": "{{ plan }}", "replicas": "{{ toInt('3') }}"}},
        )
        cluster.put(make_node(resources={"configMaps": [entry]}))

        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-vars")
        assert obj is not None
        assert obj["data"] == {"host": "acme.example.com", "plan": "gold", "replicas": 3}

    async def test_invalid_graph_applies_nothing(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """An invalid dependency graph blocks every write."""
        resources = {"configMaps": [config_map("a", depends=["b"]), config_map("b", depends=["a"])]}
        cluster.put(make_node(resources=resources))

        result = await reconcile_node(node_reconciler)
        await reconcile_node(node_reconciler)

        assert result.requeue_after is None
        assert cluster.count("apply") == 0
        assert _condition(cluster, "Degraded")["reason"] == "InvalidDependencyGraph"
        assert _condition(cluster, "Ready")["status"] == "False"
        assert len(cluster.events("InvalidDependencyGraph")) == 1


# ---------------------------------------------------------------------------
# Failure propagation
# ---------------------------------------------------------------------------


class TestDependencyFailure:
    async def test_failure_cascades_as_skips(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """A failed resource skips everything that depends on it."""
        resources = {
            "configMaps": [
                config_map("bad", nameTemplate="{{ missing }}"),
                config_map("child", depends=["bad"]),
                config_map("grandchild", depends=["child"]),
            ]
        }
        cluster.put(make_node(resources=resources))

        await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert status["failedResourceIds"] == ["bad"]
        assert status["skippedResourceIds"] == ["child", "grandchild"]
        assert status["failedResources"] == 1
        assert status["skippedResources"] == 2
        assert status["desiredResources"] == 1
        assert cluster.obj("ConfigMap", "default", "acme-child") is None
        assert _condition(cluster, "Degraded")["reason"] == "TemplateRenderError"
        assert len(cluster.events("DependencySkipped")) == 2

    async def test_skip_events_fire_once(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """Repeated passes do not repeat DependencySkipped events."""
        resources = {"configMaps": [config_map("bad", nameTemplate="{{ missing }}"), config_map("child", ["bad"])]}
        cluster.put(make_node(resources=resources))

        await reconcile_node(node_reconciler)
        await reconcile_node(node_reconciler)

        assert len(cluster.events("DependencySkipped")) == 1
        assert len(cluster.events("TemplateRenderError")) == 1

    async def test_opt_out_proceeds_with_warning(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """skipOnDependencyFailure=false applies anyway and warns."""
        resources = {
            "configMaps": [
                config_map("bad", nameTemplate="{{ missing }}"),
                config_map("child", depends=["bad"], skipOnDependencyFailure=False),
            ]
        }
        cluster.put(make_node(resources=resources))

        await reconcile_node(node_reconciler)
        await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert cluster.obj("ConfigMap", "default", "acme-child") is not None
        assert status["failedResources"] == 1
        assert status["skippedResources"] == 0
        assert status["readyResources"] == 1
        assert status["desiredResources"] == 2
        assert len(cluster.events("DependencyFailedButProceeding")) == 1

    async def test_transient_error_is_raised_after_status_write(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Transient API errors propagate after status is saved."""
        cluster.put(make_node(resources={"configMaps": [config_map("config")]}))
        cluster.failures[("apply", "ConfigMap")] = TransientAPIError("connection reset", status=503)

        with pytest.raises(TransientAPIError):
            await reconcile_node(node_reconciler)

        assert _status(cluster)["failedResourceIds"] == ["config"]
        assert _condition(cluster, "Degraded")["reason"] == "ResourceFailed"

        await reconcile_node(node_reconciler)

        assert _condition(cluster, "Ready")["status"] == "True"
        assert len(cluster.events("Recovered")) == 1

    async def test_render_exception_fails_only_that_resource(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """An exception raised while rendering marks that resource failed and leaves siblings alone."""
        resources = {"configMaps": [config_map("bad", nameTemplate="x{{ 1 // 0 }}"), config_map("ok")]}
        cluster.put(make_node(resources=resources))

        await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert cluster.obj("ConfigMap", "default", "acme-ok") is not None
        assert status["failedResourceIds"] == ["bad"]
        assert status["readyResources"] == 1
        assert _condition(cluster, "Degraded")["reason"] == "TemplateRenderError"


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestReadiness:
    async def test_pending_is_not_failure(
        self, cluster: FakeCluster, clock: FakeClock, node_reconciler: NodeReconciler
    ) -> None:
        """A dependency that is not ready yet only delays its dependents."""
        resources = {"deployments": [deployment("app")], "configMaps": [config_map("cfg", depends=["app"])]}
        cluster.put(make_node(resources=resources))

        result = await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert result.requeue_after == 5
        assert status["failedResources"] == 0
        assert status["skippedResources"] == 0
        assert status["readyResources"] == 0
        assert status["desiredResources"] == 2
        assert status["waitingSince"] == {"app": format_time(clock.now)}
        assert _condition(cluster, "Ready")["reason"] == "ResourcesNotReady"
        assert _condition(cluster, "Degraded")["status"] == "False"
        assert cluster.obj("ConfigMap", "default", "acme-cfg") is None
        assert cluster.events("DependencySkipped") == []

    async def test_dependent_applied_once_dependency_ready(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Dependents are applied once the dependency turns ready."""
        resources = {"deployments": [deployment("app")], "configMaps": [config_map("cfg", depends=["app"])]}
        cluster.put(make_node(resources=resources))
        await reconcile_node(node_reconciler)

        cluster.set_status("Deployment", "default", "acme-app", deployment_ready_status())
        result = await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert cluster.obj("ConfigMap", "default", "acme-cfg") is not None
        assert status["readyResources"] == 2
        assert status["waitingSince"] == {}
        assert _condition(cluster, "Ready")["status"] == "True"
        assert result.requeue_after == 30

    async def test_timeout_fails_and_skips_dependents(
        self, cluster: FakeCluster, clock: FakeClock, node_reconciler: NodeReconciler
    ) -> None:
        """Readiness timeout fails the resource and skips dependents."""
        resources = {
            "deployments": [deployment("app", timeoutSeconds=60)],
            "configMaps": [config_map("cfg", depends=["app"])],
        }
        cluster.put(make_node(resources=resources))
        await reconcile_node(node_reconciler)

        clock.advance(61)
        await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert status["failedResourceIds"] == ["app"]
        assert status["skippedResourceIds"] == ["cfg"]
        assert _condition(cluster, "Degraded")["reason"] == "ReadinessTimeout"
        assert len(cluster.events("ReadinessTimeout")) == 1
        # Still tracked for cleanup
        assert "Deployment/default/acme-app@app" in status["appliedResources"]

    async def test_wait_for_ready_false_counts_as_ready(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """waitForReady=false resources count as ready right away."""
        cluster.put(make_node(resources={"deployments": [deployment("app", waitForReady=False)]}))

        result = await reconcile_node(node_reconciler)

        assert _status(cluster)["readyResources"] == 1
        assert result.requeue_after == 30


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def _foreign_config_map() -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "acme-config", "namespace": "default"},
        "data": {"owner": "someone-else"},
    }


class TestConflicts:
    async def test_stuck_leaves_foreign_object_alone(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """conflictPolicy Stuck never touches an object owned elsewhere."""
        cluster.put(_foreign_config_map())
        cluster.put(make_node(resources={"configMaps": [config_map("config")]}))

        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-config")
        assert obj is not None
        assert obj["data"] == {"owner": "someone-else"}
        assert LABEL_NODE not in _labels(obj)
        status = _status(cluster)
        assert status["conflictedResources"] == 1
        assert status["failedResourceIds"] == ["config"]
        assert _condition(cluster, "Degraded")["reason"] == "ConflictDetected"
        assert len(cluster.events("ConflictDetected")) == 1

    async def test_force_takes_ownership(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """conflictPolicy Force adopts a foreign object."""
        cluster.put(_foreign_config_map())
        cluster.put(make_node(resources={"configMaps": [config_map("config", conflictPolicy="Force")]}))

        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-config")
        assert obj is not None
        assert obj["data"] == {"owner": "acme"}
        assert _labels(obj)[LABEL_NODE] == "acme-web"
        assert _status(cluster)["conflictedResources"] == 0

    async def test_field_manager_conflict_on_apply(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """A server-side apply field conflict is a conflict failure."""
        cluster.put(make_node(resources={"configMaps": [config_map("config")]}))
        await reconcile_node(node_reconciler)

        cluster.apply_conflicts.add(("ConfigMap", "default", "acme-config"))
        await reconcile_node(node_reconciler)

        assert _status(cluster)["conflictedResources"] == 1
        assert _condition(cluster, "Degraded")["reason"] == "ConflictDetected"


# ---------------------------------------------------------------------------
# Write policies
# ---------------------------------------------------------------------------


class TestWritePolicies:
    async def test_once_never_rewrites_content(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """creationPolicy Once creates but never updates."""
        cluster.put(make_node(resources={"configMaps": [config_map("seed", creationPolicy="Once")]}))
        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-seed")
        assert obj is not None
        assert _annotations(obj)[ANNOTATION_CREATED_ONCE] == "true"

        obj["data"]["owner"] = "edited"
        await reconcile_node(node_reconciler)

        assert cluster.obj("ConfigMap", "default", "acme-seed")["data"] == {"owner": "edited"}  # type: ignore[index]
        assert cluster.count("apply", "ConfigMap") == 1
        assert _condition(cluster, "Ready")["status"] == "True"

    async def test_ignored_fields_keep_live_values(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """ignoreFields keep the cluster's values on update."""
        entry = config_map(
            "cfg",
            spec={"data": {"owner": "{{ uid }}", "plan": "{{ plan }}"}},
            ignoreFields=["$.data.owner"],
        )
        cluster.put(make_node(resources={"configMaps": [entry]}))
        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-cfg")
        assert obj is not None
        assert obj["data"] == {"plan": "gold"}

        obj["data"] = {"owner": "manual", "plan": "drifted"}
        await reconcile_node(node_reconciler)

        assert cluster.obj("ConfigMap", "default", "acme-cfg")["data"] == {  # type: ignore[index]
            "owner": "manual",
            "plan": "gold",
        }

    async def test_merge_uses_strategic_patch_for_builtin_kinds(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """patchStrategy merge uses strategic merge for built-in kinds."""
        cluster.put(make_node(resources={"configMaps": [config_map("cfg", patchStrategy="merge")]}))

        await reconcile_node(node_reconciler)
        await reconcile_node(node_reconciler)

        assert cluster.count("create", "ConfigMap") == 1
        assert cluster.strategic_patches == ["acme-cfg"]

    async def test_replace_sends_current_resource_version(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """patchStrategy replace carries the live resourceVersion."""
        cluster.put(make_node(resources={"configMaps": [config_map("cfg", patchStrategy="replace")]}))
        await reconcile_node(node_reconciler)

        cluster.objects[("ConfigMap", "default", "acme-cfg")]["data"]["owner"] = "drifted"
        await reconcile_node(node_reconciler)

        assert cluster.count("replace", "ConfigMap") == 1
        assert cluster.obj("ConfigMap", "default", "acme-cfg")["data"] == {"owner": "acme"}  # type: ignore[index]


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


class TestOrphans:
    async def test_removed_retain_resource_is_orphaned(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """A retained resource removed from the form is orphaned."""
        cluster.put(
            make_node(resources={"configMaps": [config_map("keep"), config_map("gone", deletionPolicy="Retain")]})
        )
        await reconcile_node(node_reconciler)

        _set_resources(cluster, configMaps=[config_map("keep")])
        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-gone")
        assert obj is not None
        assert _labels(obj)[LABEL_ORPHANED] == "true"
        assert LABEL_NODE not in _labels(obj)
        assert LABEL_NODE_NAMESPACE not in _labels(obj)
        assert _annotations(obj)[ANNOTATION_ORPHANED_REASON] == "RemovedFromTemplate"
        assert ANNOTATION_ORPHANED_AT in _annotations(obj)
        assert _status(cluster)["appliedResources"] == ["ConfigMap/default/acme-keep@keep"]

    async def test_readded_resource_is_readopted(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """An orphaned resource added back is adopted again."""
        both = [config_map("keep"), config_map("gone", deletionPolicy="Retain")]
        cluster.put(make_node(resources={"configMaps": both}))
        await reconcile_node(node_reconciler)
        _set_resources(cluster, configMaps=[config_map("keep")])
        await reconcile_node(node_reconciler)

        _set_resources(cluster, configMaps=both)
        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-gone")
        assert obj is not None
        assert LABEL_ORPHANED not in _labels(obj)
        assert _labels(obj)[LABEL_NODE] == "acme-web"
        assert ANNOTATION_ORPHANED_AT not in _annotations(obj)
        assert ANNOTATION_ORPHANED_REASON not in _annotations(obj)
        assert "ConfigMap/default/acme-gone@gone" in _status(cluster)["appliedResources"]

    async def test_removed_delete_resource_is_deleted(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """A removed resource with deletionPolicy Delete is deleted."""
        cluster.put(make_node(resources={"configMaps": [config_map("keep"), config_map("gone")]}))
        await reconcile_node(node_reconciler)

        _set_resources(cluster, configMaps=[config_map("keep")])
        await reconcile_node(node_reconciler)

        assert cluster.obj("ConfigMap", "default", "acme-gone") is None
        assert cluster.obj("ConfigMap", "default", "acme-keep") is not None

    async def test_renamed_id_keeps_shared_object(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """Renaming an id that keeps the same object does not delete it."""
        cluster.put(make_node(resources={"configMaps": [config_map("old", nameTemplate="{{ uid }}-shared")]}))
        await reconcile_node(node_reconciler)

        _set_resources(cluster, configMaps=[config_map("new", nameTemplate="{{ uid }}-shared")])
        await reconcile_node(node_reconciler)

        assert cluster.obj("ConfigMap", "default", "acme-shared") is not None
        assert _status(cluster)["appliedResources"] == ["ConfigMap/default/acme-shared@new"]


# ---------------------------------------------------------------------------
# Resources skipped after they were written
# ---------------------------------------------------------------------------


def _break_parent(cluster: FakeCluster, *children: dict[str, Any]) -> None:
    _set_resources(cluster, configMaps=[config_map("a", nameTemplate="{{ missing }}"), *children])


class TestSkippedStaysTracked:
    async def test_skipped_record_is_kept(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """A resource written earlier and skipped now keeps its applied record."""
        child = config_map("child", depends=["a"], targetNamespace="other")
        cluster.put(make_node(resources={"configMaps": [config_map("a"), child]}))
        await reconcile_node(node_reconciler)

        _break_parent(cluster, child)
        await reconcile_node(node_reconciler)

        status = _status(cluster)
        assert status["skippedResourceIds"] == ["child"]
        assert status["appliedResources"] == ["ConfigMap/default/acme-a@a", "ConfigMap/other/acme-child@child"]

    async def test_node_delete_releases_skipped_resource(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Deleting the node deletes a cross-namespace child that is currently skipped."""
        child = config_map("child", depends=["a"], targetNamespace="other")
        cluster.put(make_node(resources={"configMaps": [config_map("a"), child]}))
        await reconcile_node(node_reconciler)
        _break_parent(cluster, child)
        await reconcile_node(node_reconciler)

        await cluster.delete(GROUP_VERSION, KIND_NODE, "default", "acme-web")
        await reconcile_node(node_reconciler)

        assert NODE_KEY not in cluster.objects
        assert cluster.obj("ConfigMap", "other", "acme-child") is None
        assert cluster.obj("ConfigMap", "default", "acme-a") is None

    async def test_removed_skipped_retain_resource_is_orphaned(
        self, cluster: FakeCluster, node_reconciler: NodeReconciler
    ) -> None:
        """Removing a skipped Retain resource from the template still marks it orphaned."""
        child = config_map("child", depends=["a"], deletionPolicy="Retain")
        cluster.put(make_node(resources={"configMaps": [config_map("a"), child]}))
        await reconcile_node(node_reconciler)
        _break_parent(cluster, child)
        await reconcile_node(node_reconciler)

        _break_parent(cluster)
        await reconcile_node(node_reconciler)

        obj = cluster.obj("ConfigMap", "default", "acme-child")
        assert obj is not None
        assert _labels(obj)[LABEL_ORPHANED] == "true"
        assert LABEL_NODE not in _labels(obj)
        assert _annotations(obj)[ANNOTATION_ORPHANED_REASON] == "RemovedFromTemplate"
        assert _status(cluster)["appliedResources"] == ["ConfigMap/default/acme-a@a"]


# ---------------------------------------------------------------------------
# Node deletion
# ---------------------------------------------------------------------------


class TestCleanup:
    async def test_delete_honours_deletion_policy(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """Node deletion deletes or orphans each resource by policy."""
        cluster.put(
            make_node(resources={"configMaps": [config_map("temp"), config_map("data", deletionPolicy="Retain")]})
        )
        await reconcile_node(node_reconciler)

        await cluster.delete(GROUP_VERSION, KIND_NODE, "default", "acme-web")
        result = await reconcile_node(node_reconciler)

        assert result.requeue_after is None
        assert cluster.obj("ConfigMap", "default", "acme-temp") is None
        retained = cluster.obj("ConfigMap", "default", "acme-data")
        assert retained is not None
        assert _labels(retained)[LABEL_ORPHANED] == "true"
        assert _annotations(retained)[ANNOTATION_ORPHANED_REASON] == "LynqNodeDeleted"
        assert NODE_KEY not in cluster.objects

    async def test_failed_release_keeps_finalizer(self, cluster: FakeCluster, node_reconciler: NodeReconciler) -> None:
        """The finalizer stays while a resource cannot be released."""
        cluster.put(make_node(resources={"configMaps": [config_map("temp"), config_map("other")]}))
        await reconcile_node(node_reconciler)
        await cluster.delete(GROUP_VERSION, KIND_NODE, "default", "acme-web")
        cluster.failures[("delete", "ConfigMap")] = TransientAPIError("etcd timeout", status=504)

        with pytest.raises(TransientAPIError):
            await reconcile_node(node_reconciler)

        node = cluster.objects[NODE_KEY]
        assert node["metadata"]["finalizers"] == [NODE_FINALIZER]
        assert _status(cluster)["appliedResources"] == ["ConfigMap/default/acme-temp@temp"]
        assert cluster.obj("ConfigMap", "default", "acme-other") is None

        await reconcile_node(node_reconciler)

        assert NODE_KEY not in cluster.objects
        assert cluster.obj("ConfigMap", "default", "acme-temp") is None
