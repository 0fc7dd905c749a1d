"""LynqNode reconciler.

One pass walks the node's resources in dependency order.  Every resource
ends the pass in one of four states:

- READY: written and ready (or written with ``waitForReady: false``)
- PENDING: written but not ready yet, or waiting on a pending dependency
- FAILED: render error, conflict, readiness timeout or API error
- SKIPPED: a dependency FAILED or was SKIPPED and ``skipOnDependencyFailure``

Readiness is polled once per pass; the first time a resource was seen
waiting is persisted in ``status.waitingSince`` so the timeout holds across
requeues and restarts.
"""

from __future__ import annotations

import copy
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.cluster.events import EventRecorder, EventType
from lynq.controller.applier import ResourceApplier
from lynq.controller.orphans import OrphanManager, removed_records
from lynq.controller.result import ReconcileResult
from lynq.controller.status import write_status
from lynq.errors import ConflictError, TemplateRenderError, TransientAPIError, ValidationError
from lynq.graph import build_graph
from lynq.models.config import ControllerConfig
from lynq.models.form import ResourceSpec
from lynq.models.labels import (
    GROUP_VERSION,
    KIND_NODE,
    NODE_FINALIZER,
    ORPHAN_REASON_NODE_DELETED,
    ORPHAN_REASON_REMOVED,
)
from lynq.models.node import (
    CONDITION_DEGRADED,
    CONDITION_READY,
    AppliedResource,
    Condition,
    ConditionStatus,
    NodeInstance,
    NodeStatus,
    find_condition,
    set_condition,
)
from lynq.models.times import format_time, parse_time, utc_now
from lynq.observability import metrics
from lynq.observability.logging import get_logger
from lynq.readiness import is_ready, readiness_message
from lynq.template import TemplateEngine, build_variables

_logger = get_logger("node_controller")

REASON_INVALID_GRAPH = "InvalidDependencyGraph"
REASON_RENDER_ERROR = "TemplateRenderError"
REASON_CONFLICT = "ConflictDetected"
REASON_TIMEOUT = "ReadinessTimeout"
REASON_FAILED = "ResourceFailed"

EVENT_DEPENDENCY_SKIPPED = "DependencySkipped"
EVENT_DEPENDENCY_FAILED_PROCEEDING = "DependencyFailedButProceeding"


class ReconcileType(StrEnum):
    INIT = "Init"
    SPEC = "Spec"
    CLEANUP = "Cleanup"


class ResourceState(StrEnum):
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"
    SKIPPED = "Skipped"


def determine_reconcile_type(node: NodeInstance) -> tuple[ReconcileType, str]:
    """Pick the reconcile path for *node* and explain why."""
    if node.being_deleted:
        return ReconcileType.CLEANUP, "deletion timestamp set"
    if not node.has_finalizer:
        return ReconcileType.INIT, "finalizer missing"
    # Always a full pass: row data changes arrive as annotations without a generation bump
    return ReconcileType.SPEC, "full reconcile"


@dataclass
class ResourceResult:
    id: str
    state: ResourceState
    reason: str = ""
    message: str = ""


@dataclass
class PassSummary:
    """Outcome of one ordered pass over a node's resources."""

    results: dict[str, ResourceResult] = field(default_factory=dict)
    written: list[AppliedResource] = field(default_factory=list)
    waiting_since: dict[str, str] = field(default_factory=dict)
    conflicted: int = 0
    render_errors: int = 0
    timeouts: int = 0
    error: TransientAPIError | None = None

    def ids_in(self, state: ResourceState) -> list[str]:
        return [r.id for r in self.results.values() if r.state == state]

    def count(self, state: ResourceState) -> int:
        return sum(1 for r in self.results.values() if r.state == state)


class NodeReconciler:
    """Drives the managed objects of one LynqNode toward its form snapshot."""

    def __init__(
        self,
        client: KubeClient,
        recorder: EventRecorder,
        config: ControllerConfig | None = None,
        engine: TemplateEngine | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._recorder = recorder
        self._config = config or ControllerConfig()
        self._now = now_fn
        self._applier = ResourceApplier(client, engine or TemplateEngine(), field_manager=self._config.field_manager)
        self._orphans = OrphanManager(client, now_fn=now_fn)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Reconcile the node ``namespace/name``.

        Raises:
            TransientAPIError: an API call failed; the caller backs off and retries.
        """
        started = time.monotonic()
        try:
            result = await self._reconcile(namespace, name)
        except Exception:
            metrics.node_reconcile_duration_seconds.labels(result="error").observe(time.monotonic() - started)
            raise
        metrics.node_reconcile_duration_seconds.labels(result="success").observe(time.monotonic() - started)
        return result

    async def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        obj = await self._client.get(GROUP_VERSION, KIND_NODE, namespace, name)
        if obj is None:
            metrics.forget_node(name, namespace)
            return ReconcileResult.done()
        try:
            node = NodeInstance.from_object(obj)
        except ValueError as exc:
            _logger.error("node_spec_invalid", node=name, namespace=namespace, error=str(exc))
            return ReconcileResult.done()
        reconcile_type, why = determine_reconcile_type(node)
        _logger.debug("node_reconcile_start", node=name, namespace=namespace, type=str(reconcile_type), why=why)

        if reconcile_type == ReconcileType.CLEANUP:
            return await self._cleanup(node, obj)
        if reconcile_type == ReconcileType.INIT:
            body = copy.deepcopy(obj)
            body["metadata"]["finalizers"] = [*node.finalizers, NODE_FINALIZER]
            await self._client.replace(body)
            _logger.info("node_finalizer_added", node=name, namespace=namespace)
            return ReconcileResult.after(0)
        return await self._reconcile_spec(node, obj)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup(self, node: NodeInstance, obj: dict[str, Any]) -> ReconcileResult:
        if not node.has_finalizer:
            return ReconcileResult.done()
        report = await self._orphans.release_all(node, node.status.applied_resources, ORPHAN_REASON_NODE_DELETED)
        if report.error is not None:
            status = copy.deepcopy(node.status)
            status.applied_resources = report.pending
            await write_status(self._client, obj, status.to_dict(), self._config.status_update_retries)
            raise report.error

        body = copy.deepcopy(obj)
        body["metadata"]["finalizers"] = [f for f in node.finalizers if f != NODE_FINALIZER]
        await self._client.replace(body)
        metrics.forget_node(node.name, node.namespace)
        _logger.info("node_cleanup_complete", node=node.name, namespace=node.namespace, released=len(report.actions))
        return ReconcileResult.done()

    # ------------------------------------------------------------------
    # Spec
    # ------------------------------------------------------------------

    async def _reconcile_spec(self, node: NodeInstance, obj: dict[str, Any]) -> ReconcileResult:
        log = _logger.bind(node=node.name, namespace=node.namespace)
        previous = node.status
        try:
            order = build_graph(node.resources).topological_order()
        except ValidationError as exc:
            return await self._invalid_graph(node, obj, exc)

        summary = await self._apply_in_order(node, list(order))

        declared_ids = [r.id for r in node.resources]
        written_ids = {r.id for r in summary.written}
        applied = list(summary.written)
        # Earlier records of still-declared resources not written this pass, skipped ones included
        for record in previous.applied_resources:
            if record.id in declared_ids and record.id not in written_ids:
                applied.append(record)

        keep = {(r.kind, r.namespace, r.name) for r in applied}
        report = await self._orphans.release_all(
            node, removed_records(previous.applied_resources, declared_ids), ORPHAN_REASON_REMOVED, keep=keep
        )
        applied.extend(report.pending)
        error = summary.error or report.error

        order_index = {rid: i for i, rid in enumerate(declared_ids)}
        applied.sort(key=lambda r: order_index.get(r.id, len(order_index)))
        status = self._aggregate(node, summary, applied)
        await self._publish(node, obj, status, summary)

        if error is not None:
            raise error
        pending = summary.count(ResourceState.PENDING)
        log.debug(
            "node_reconcile_done",
            ready=status.ready_resources,
            desired=status.desired_resources,
            failed=status.failed_resources,
            pending=pending,
        )
        if pending:
            return ReconcileResult.after(self._config.readiness_poll_seconds)
        return ReconcileResult.after(self._config.resync_seconds)

    async def _apply_in_order(self, node: NodeInstance, order: list[str]) -> PassSummary:
        previous = node.status
        previously_bad = set(previous.failed_resource_ids) | set(previous.skipped_resource_ids)
        previously_skipped = set(previous.skipped_resource_ids)
        by_id = {r.id: r for r in node.resources}
        variables = build_variables(**node.variables_source(), hub_id=node.hub_id, template_ref=node.template_ref)
        now = self._now()
        summary = PassSummary()

        for rid in order:
            spec = by_id[rid]
            dep_states = {dep: summary.results[dep].state for dep in spec.depend_ids}
            bad_deps = [d for d, s in dep_states.items() if s in (ResourceState.FAILED, ResourceState.SKIPPED)]
            if bad_deps:
                if spec.skip_on_dependency_failure:
                    summary.results[rid] = ResourceResult(
                        rid, ResourceState.SKIPPED, "DependencyFailed", f"dependency {bad_deps[0]} failed"
                    )
                    if rid not in previously_skipped:
                        await self._recorder.record(
                            node.raw,
                            EventType.WARNING,
                            EVENT_DEPENDENCY_SKIPPED,
                            f"Resource {rid} skipped because dependency {bad_deps[0]} failed or was skipped",
                        )
                    _logger.info("dependency_skipped", node=node.name, id=rid, dependency=bad_deps[0])
                    continue
                newly_failed = [d for d in bad_deps if d not in previously_bad]
                if newly_failed:
                    await self._recorder.record(
                        node.raw,
                        EventType.WARNING,
                        EVENT_DEPENDENCY_FAILED_PROCEEDING,
                        f"Resource {rid} proceeding although dependency {newly_failed[0]} failed "
                        "(skipOnDependencyFailure=false)",
                    )
            if any(s == ResourceState.PENDING for s in dep_states.values()):
                summary.results[rid] = ResourceResult(rid, ResourceState.PENDING, "WaitingForDependency")
                continue

            summary.results[rid] = await self._apply_one(node, rid, spec, variables, now, summary)
        return summary

    async def _apply_one(
        self,
        node: NodeInstance,
        rid: str,
        spec: ResourceSpec,
        variables: dict[str, Any],
        now: datetime,
        summary: PassSummary,
    ) -> ResourceResult:
        log = _logger.bind(node=node.name, namespace=node.namespace, id=rid)
        try:
            rendered = self._applier.render(node, spec, variables)
        except TemplateRenderError as exc:
            summary.render_errors += 1
            log.warning("template_render_failed", error=str(exc))
            return ResourceResult(rid, ResourceState.FAILED, REASON_RENDER_ERROR, str(exc))

        try:
            outcome = await self._applier.apply(node, rendered)
        except ConflictError as exc:
            summary.conflicted += 1
            metrics.node_conflicts_total.labels(
                lynqnode=node.name,
                namespace=node.namespace,
                resource_kind=spec.kind,
                conflict_policy=str(spec.conflict_policy),
            ).inc()
            log.warning("resource_conflict", error=str(exc))
            return ResourceResult(rid, ResourceState.FAILED, REASON_CONFLICT, str(exc))
        except TransientAPIError as exc:
            if summary.error is None:
                summary.error = exc
            log.warning("resource_apply_failed", error=str(exc))
            return ResourceResult(rid, ResourceState.FAILED, REASON_FAILED, str(exc))

        summary.written.append(rendered.record)
        if not spec.wait_for_ready or is_ready(outcome.live):
            return ResourceResult(rid, ResourceState.READY)

        waiting_since = parse_time(node.status.waiting_since.get(rid)) or now
        summary.waiting_since[rid] = format_time(waiting_since)
        if (now - waiting_since).total_seconds() >= spec.timeout_seconds:
            summary.timeouts += 1
            message = f"not ready after {spec.timeout_seconds}s: {readiness_message(outcome.live)}"
            log.warning("readiness_timeout", timeout_seconds=spec.timeout_seconds)
            return ResourceResult(rid, ResourceState.FAILED, REASON_TIMEOUT, message)
        return ResourceResult(rid, ResourceState.PENDING, "WaitingForReady", readiness_message(outcome.live))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _aggregate(self, node: NodeInstance, summary: PassSummary, applied: list[AppliedResource]) -> NodeStatus:
        now = self._now()
        failed_ids = summary.ids_in(ResourceState.FAILED)
        skipped_ids = summary.ids_in(ResourceState.SKIPPED)
        desired = len(summary.results) - len(skipped_ids)
        ready = summary.count(ResourceState.READY)

        status = NodeStatus(
            observed_generation=node.generation,
            desired_resources=desired,
            ready_resources=ready,
            failed_resources=len(failed_ids),
            skipped_resources=len(skipped_ids),
            conflicted_resources=summary.conflicted,
            skipped_resource_ids=skipped_ids,
            failed_resource_ids=failed_ids,
            applied_resources=applied,
            waiting_since=summary.waiting_since,
            conditions=copy.deepcopy(node.status.conditions),
        )

        if not failed_ids and ready == desired:
            ready_cond = Condition(
                CONDITION_READY, ConditionStatus.TRUE, "Reconciled", f"{ready}/{desired} resources ready"
            )
        elif failed_ids:
            ready_cond = Condition(
                CONDITION_READY,
                ConditionStatus.FALSE,
                "ResourcesFailed",
                f"{ready}/{desired} resources ready, {len(failed_ids)} failed, {len(skipped_ids)} skipped",
            )
        else:
            ready_cond = Condition(
                CONDITION_READY, ConditionStatus.FALSE, "ResourcesNotReady", f"{ready}/{desired} resources ready"
            )
        set_condition(status.conditions, ready_cond, now)

        reason = self._degraded_reason(summary, failed_ids)
        if reason:
            first = summary.results[failed_ids[0]]
            degraded = Condition(CONDITION_DEGRADED, ConditionStatus.TRUE, reason, f"{first.id}: {first.message}")
        else:
            degraded = Condition(CONDITION_DEGRADED, ConditionStatus.FALSE, "Healthy", "")
        set_condition(status.conditions, degraded, now)
        return status

    @staticmethod
    def _degraded_reason(summary: PassSummary, failed_ids: list[str]) -> str:
        if not failed_ids:
            return ""
        if summary.render_errors:
            return REASON_RENDER_ERROR
        if summary.conflicted:
            return REASON_CONFLICT
        if summary.timeouts:
            return REASON_TIMEOUT
        return REASON_FAILED

    async def _publish(self, node: NodeInstance, obj: dict[str, Any], status: NodeStatus, summary: PassSummary) -> None:
        before = find_condition(node.status.conditions, CONDITION_DEGRADED)
        after = find_condition(status.conditions, CONDITION_DEGRADED)
        if after is not None and after.status == ConditionStatus.TRUE:
            if before is None or before.status != ConditionStatus.TRUE or before.reason != after.reason:
                await self._recorder.record(node.raw, EventType.WARNING, after.reason, after.message)
        elif before is not None and before.status == ConditionStatus.TRUE:
            await self._recorder.record(node.raw, EventType.NORMAL, "Recovered", "All resources reconciled")

        await write_status(self._client, obj, status.to_dict(), self._config.status_update_retries)
        self._record_metrics(node, status)

    def _record_metrics(self, node: NodeInstance, status: NodeStatus) -> None:
        labels = {"lynqnode": node.name, "namespace": node.namespace}
        metrics.node_resources_desired.labels(**labels).set(status.desired_resources)
        metrics.node_resources_ready.labels(**labels).set(status.ready_resources)
        metrics.node_resources_failed.labels(**labels).set(status.failed_resources)
        metrics.node_resources_skipped.labels(**labels).set(status.skipped_resources)
        metrics.node_resources_conflicted.labels(**labels).set(status.conflicted_resources)
        degraded_reason = ""
        for cond in status.conditions:
            metrics.node_condition_status.labels(**labels, type=cond.type).set(metrics.condition_to_metric(cond.status))
            if cond.type == CONDITION_DEGRADED and cond.status == ConditionStatus.TRUE:
                degraded_reason = cond.reason
        metrics.set_node_degraded(node.name, node.namespace, degraded_reason)

    async def _invalid_graph(self, node: NodeInstance, obj: dict[str, Any], exc: ValidationError) -> ReconcileResult:
        """Refuse to apply anything for a node whose snapshot has an invalid graph."""
        now = self._now()
        status = copy.deepcopy(node.status)
        status.observed_generation = node.generation
        message = str(exc)
        before = find_condition(status.conditions, CONDITION_DEGRADED)
        transitioned = before is None or before.status != ConditionStatus.TRUE or before.reason != REASON_INVALID_GRAPH
        set_condition(
            status.conditions, Condition(CONDITION_READY, ConditionStatus.FALSE, REASON_INVALID_GRAPH, message), now
        )
        set_condition(
            status.conditions, Condition(CONDITION_DEGRADED, ConditionStatus.TRUE, REASON_INVALID_GRAPH, message), now
        )
        if transitioned:
            await self._recorder.record(node.raw, EventType.WARNING, REASON_INVALID_GRAPH, message)
        _logger.error("invalid_dependency_graph", node=node.name, namespace=node.namespace, error=message)
        await write_status(self._client, obj, status.to_dict(), self._config.status_update_retries)
        self._record_metrics(node, status)
        return ReconcileResult.done()
