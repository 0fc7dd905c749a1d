"""Rollout tracking and admission control for form template changes.

Rollout state is derived: every form reconcile lists the form's nodes and
recomputes the counts from scratch.  The admission gate uses the same
counts to decide how many more nodes may move to the new generation, so a
briefly stale count can overshoot ``maxSkew`` for one pass but never
accumulates.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from lynq.cluster.client import KubeClient
from lynq.models.form import Form
from lynq.models.labels import GROUP_VERSION, KIND_NODE
from lynq.models.node import NodeInstance
from lynq.models.rollout import RolloutPhase, RolloutState, RolloutStats
from lynq.observability import metrics
from lynq.observability.logging import get_logger

_logger = get_logger("rollout")


async def list_form_nodes(client: KubeClient, namespace: str, form_name: str) -> list[NodeInstance]:
    """List the nodes of one form; nodes with an unparsable spec are skipped."""
    nodes: list[NodeInstance] = []
    for obj in await client.list(GROUP_VERSION, KIND_NODE, namespace):
        if (obj.get("spec") or {}).get("templateRef") != form_name:
            continue
        try:
            nodes.append(NodeInstance.from_object(obj))
        except ValueError as exc:
            _logger.warning(
                "node_unparsable", node=(obj.get("metadata") or {}).get("name", ""), namespace=namespace, error=str(exc)
            )
    return nodes


def compute_stats(form: Form, nodes: Iterable[NodeInstance], now: datetime) -> RolloutStats:
    """Count the form's nodes by generation and readiness.

    A node is *updated* when its ``template-generation`` annotation matches
    the form's generation, and *ready* when it reconciled its current spec and
    reports Ready.  An updating node is *stalled* once it has been updating
    for longer than ``progressDeadlineSeconds``.
    """
    deadline = form.rollout.progress_deadline_seconds if form.rollout else 0
    total = ready = updated = updating = ready_updated = stalled = 0
    for node in nodes:
        total += 1
        is_updated = node.template_generation == form.generation
        if node.ready:
            ready += 1
        if not is_updated:
            continue
        updated += 1
        if node.ready:
            ready_updated += 1
            continue
        updating += 1
        since = node.template_updated_at
        if deadline and since is not None and (now - since).total_seconds() > deadline:
            stalled += 1
    return RolloutStats(
        total_nodes=total,
        ready_nodes=ready,
        updated_nodes=updated,
        updating_nodes=updating,
        ready_updated_nodes=ready_updated,
        stalled_nodes=stalled,
    )


def rollout_phase(stats: RolloutStats) -> RolloutPhase:
    if stats.total_nodes == 0 or stats.updated_nodes == 0:
        return RolloutPhase.IDLE
    if stats.stalled_nodes > 0:
        return RolloutPhase.FAILED
    if stats.ready_updated_nodes == stats.total_nodes:
        return RolloutPhase.COMPLETE
    return RolloutPhase.IN_PROGRESS


def rollout_message(state: RolloutState, stats: RolloutStats, deadline_seconds: int) -> str:
    if state.phase == RolloutPhase.IDLE:
        return "No nodes using this template" if state.total_nodes == 0 else "Waiting for nodes to be updated"
    if state.phase == RolloutPhase.COMPLETE:
        return f"All {state.total_nodes} nodes updated and ready"
    if state.phase == RolloutPhase.FAILED:
        return (
            f"Rollout stalled: {stats.stalled_nodes} node(s) not ready within "
            f"progressDeadlineSeconds ({deadline_seconds}s)"
        )
    return (
        f"Updating: {state.updated_nodes}/{state.total_nodes} nodes updated "
        f"({state.updating_nodes} updating, {state.ready_updated_nodes} ready)"
    )


def next_rollout_state(
    previous: RolloutState | None, stats: RolloutStats, form: Form, now: datetime
) -> RolloutState:
    """Derive the rollout state for this pass.

    ``start_time`` is set when a rollout first leaves Idle and
    ``completion_time`` when it enters Complete or Failed; both reset when
    the target generation changes.
    """
    phase = rollout_phase(stats)
    carried = previous if previous is not None and previous.target_generation == form.generation else None

    start_time = carried.start_time if carried else None
    completion_time = carried.completion_time if carried else None
    previous_phase = carried.phase if carried else RolloutPhase.IDLE

    if phase == RolloutPhase.IDLE:
        start_time = completion_time = None
    else:
        if start_time is None:
            start_time = now
        if phase in (RolloutPhase.COMPLETE, RolloutPhase.FAILED):
            if previous_phase != phase or completion_time is None:
                completion_time = now
        else:
            completion_time = None

    state = RolloutState(
        phase=phase,
        target_generation=form.generation,
        total_nodes=stats.total_nodes,
        updated_nodes=stats.updated_nodes,
        updating_nodes=stats.updating_nodes,
        ready_updated_nodes=stats.ready_updated_nodes,
        start_time=start_time,
        completion_time=completion_time,
    )
    deadline = form.rollout.progress_deadline_seconds if form.rollout else 0
    state.message = rollout_message(state, stats, deadline)
    if previous_phase != phase:
        _logger.info(
            "rollout_phase_changed",
            form=form.name,
            namespace=form.namespace,
            previous=str(previous_phase),
            phase=str(phase),
            generation=form.generation,
        )
    return state


def publish_rollout_metrics(form: Form, state: RolloutState | None) -> None:
    """Export the rollout gauges, or remove them when throttling is off."""
    if state is None:
        metrics.forget_form_rollout(form.name, form.namespace)
        return
    labels = {"form": form.name, "namespace": form.namespace}
    metrics.form_rollout_updating_nodes.labels(**labels).set(state.updating_nodes)
    metrics.form_rollout_phase.labels(**labels).set(metrics.rollout_phase_to_metric(state.phase))
    metrics.form_rollout_progress.labels(**labels).set(state.progress)


def admit(max_skew: int, updating_nodes: int, candidates: Iterable[str]) -> list[str]:
    """Select which candidates may move to a new generation now.

    Candidates are taken in name order so every replica and every pass
    agrees on who goes next.  ``max_skew == 0`` admits everyone.
    """
    ordered = sorted(set(candidates))
    if max_skew <= 0:
        return ordered
    capacity = max(0, max_skew - updating_nodes)
    return ordered[:capacity]
