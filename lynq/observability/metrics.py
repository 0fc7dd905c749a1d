"""Prometheus metrics for Lynq.

All collectors live in the default registry so the ``/metrics`` endpoint of
the probe server exposes them without extra wiring.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

from lynq.models.node import ConditionStatus
from lynq.models.rollout import PHASE_METRIC_VALUES, RolloutPhase

# ---------------------------------------------------------------------------
# LynqNode
# ---------------------------------------------------------------------------

node_reconcile_duration_seconds = Histogram(
    "lynqnode_reconcile_duration_seconds",
    "Duration of LynqNode reconciliations",
    ["result"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

node_resources_desired = Gauge(
    "lynqnode_resources_desired",
    "Number of desired (non-skipped) resources for a LynqNode",
    ["lynqnode", "namespace"],
)

node_resources_ready = Gauge(
    "lynqnode_resources_ready",
    "Number of ready resources for a LynqNode",
    ["lynqnode", "namespace"],
)

node_resources_failed = Gauge(
    "lynqnode_resources_failed",
    "Number of failed resources for a LynqNode",
    ["lynqnode", "namespace"],
)

node_resources_skipped = Gauge(
    "lynqnode_resources_skipped",
    "Number of resources skipped because a dependency failed",
    ["lynqnode", "namespace"],
)

node_resources_conflicted = Gauge(
    "lynqnode_resources_conflicted",
    "Number of resources currently in conflict state for a LynqNode",
    ["lynqnode", "namespace"],
)

node_condition_status = Gauge(
    "lynqnode_condition_status",
    "Status of LynqNode conditions (0=False, 1=True, 2=Unknown)",
    ["lynqnode", "namespace", "type"],
)

node_degraded_status = Gauge(
    "lynqnode_degraded_status",
    "Indicates if a LynqNode is in degraded state (1=degraded, 0=not degraded)",
    ["lynqnode", "namespace", "reason"],
)

node_conflicts_total = Counter(
    "lynqnode_conflicts_total",
    "Total number of resource conflicts encountered during reconciliation",
    ["lynqnode", "namespace", "resource_kind", "conflict_policy"],
)

orphaned_resources_total = Counter(
    "lynq_orphaned_resources_total",
    "Total number of resources retained as orphans",
    ["namespace", "kind", "reason"],
)

# ---------------------------------------------------------------------------
# LynqForm rollout
# ---------------------------------------------------------------------------

form_rollout_updating_nodes = Gauge(
    "lynqform_rollout_updating_nodes",
    "Number of nodes currently being updated for a LynqForm (updated but not Ready yet)",
    ["form", "namespace"],
)

form_rollout_phase = Gauge(
    "lynqform_rollout_phase",
    "Current rollout phase for a LynqForm (0=Idle, 1=InProgress, 2=Failed, 3=Complete)",
    ["form", "namespace"],
)

form_rollout_progress = Gauge(
    "lynqform_rollout_progress",
    "Rollout progress percentage for a LynqForm (readyUpdatedNodes/totalNodes * 100)",
    ["form", "namespace"],
)

# ---------------------------------------------------------------------------
# LynqHub
# ---------------------------------------------------------------------------

hub_desired = Gauge("lynqhub_desired", "Number of desired LynqNodes for a hub", ["hub", "namespace"])
hub_ready = Gauge("lynqhub_ready", "Number of ready LynqNodes for a hub", ["hub", "namespace"])
hub_failed = Gauge("lynqhub_failed", "Number of failed LynqNodes for a hub", ["hub", "namespace"])

_CONDITION_VALUES = {
    ConditionStatus.FALSE: 0,
    ConditionStatus.TRUE: 1,
    ConditionStatus.UNKNOWN: 2,
}

_NODE_GAUGES = (
    node_resources_desired,
    node_resources_ready,
    node_resources_failed,
    node_resources_skipped,
    node_resources_conflicted,
)


def condition_to_metric(status: ConditionStatus) -> int:
    return _CONDITION_VALUES.get(status, 2)


def rollout_phase_to_metric(phase: RolloutPhase | str) -> int:
    try:
        return PHASE_METRIC_VALUES[RolloutPhase(phase)]
    except ValueError:
        return 0


def forget_node(name: str, namespace: str) -> None:
    """Remove every per-node series once the node is gone."""
    for gauge in _NODE_GAUGES:
        _remove(gauge, name, namespace)
    for cond_type in ("Ready", "Degraded"):
        _remove(node_condition_status, name, namespace, cond_type)
    reason = _last_degraded_reason.pop((name, namespace), None)
    if reason is not None:
        _remove(node_degraded_status, name, namespace, reason)


def forget_form_rollout(name: str, namespace: str) -> None:
    """Remove rollout series for a form without rollout config (or deleted)."""
    for gauge in (form_rollout_updating_nodes, form_rollout_phase, form_rollout_progress):
        _remove(gauge, name, namespace)


def forget_hub(name: str, namespace: str) -> None:
    for gauge in (hub_desired, hub_ready, hub_failed):
        _remove(gauge, name, namespace)


def _remove(collector: Gauge, *labels: str) -> None:
    try:
        collector.remove(*labels)
    except KeyError:
        pass


_last_degraded_reason: dict[tuple[str, str], str] = {}


def set_node_degraded(name: str, namespace: str, reason: str) -> None:
    """Publish the degraded gauge; an empty *reason* means not degraded.

    Only one ``reason`` series is kept per node.
    """
    key = (name, namespace)
    previous = _last_degraded_reason.get(key)
    if previous is not None and previous != reason:
        _remove(node_degraded_status, name, namespace, previous)
    _last_degraded_reason[key] = reason
    node_degraded_status.labels(lynqnode=name, namespace=namespace, reason=reason).set(1 if reason else 0)


# ---------------------------------------------------------------------------
# Work queues
# ---------------------------------------------------------------------------

workqueue_depth = Gauge("lynq_workqueue_depth", "Keys waiting in a work queue", ["name"])
workqueue_retries_total = Counter("lynq_workqueue_retries_total", "Rate-limited requeues", ["name"])
