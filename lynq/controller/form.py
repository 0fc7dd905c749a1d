"""LynqForm reconciler: validation conditions, node counts and rollout status."""

from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import datetime
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.cluster.events import EventRecorder, EventType
from lynq.controller.result import ReconcileResult
from lynq.controller.rollout import compute_stats, list_form_nodes, next_rollout_state, publish_rollout_metrics
from lynq.controller.status import write_status
from lynq.models.config import ControllerConfig
from lynq.models.form import Form
from lynq.models.labels import GROUP_VERSION, KIND_FORM, KIND_HUB
from lynq.models.node import Condition, ConditionStatus, find_condition, set_condition
from lynq.models.rollout import RolloutPhase, RolloutState
from lynq.models.times import utc_now
from lynq.observability import metrics
from lynq.observability.logging import get_logger
from lynq.template import TemplateEngine
from lynq.validation import ValidationReport, validate_form

_logger = get_logger("form_controller")

CONDITION_VALID = "Valid"
CONDITION_APPLIED = "Applied"

FORM_RESYNC_SECONDS = 60

_ROLLOUT_EVENTS = {
    RolloutPhase.IDLE: ("RolloutIdle", EventType.NORMAL),
    RolloutPhase.IN_PROGRESS: ("RolloutProgressing", EventType.NORMAL),
    RolloutPhase.COMPLETE: ("RolloutComplete", EventType.NORMAL),
    RolloutPhase.FAILED: ("RolloutStalled", EventType.WARNING),
}


class FormReconciler:
    """Validates forms and summarises the state of their nodes."""

    def __init__(
        self,
        client: KubeClient,
        recorder: EventRecorder,
        config: ControllerConfig | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._recorder = recorder
        self._config = config or ControllerConfig()
        self._now = now_fn
        self._engine = TemplateEngine()

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        obj = await self._client.get(GROUP_VERSION, KIND_FORM, namespace, name)
        if obj is None:
            metrics.forget_form_rollout(name, namespace)
            return ReconcileResult.done()
        log = _logger.bind(form=name, namespace=namespace)

        hub_id = str((obj.get("spec") or {}).get("hubId", "") or "")
        hub_found = None
        if hub_id:
            hub_found = await self._client.get(GROUP_VERSION, KIND_HUB, namespace, hub_id) is not None
        report = validate_form(obj, hub_found=hub_found, engine=self._engine)

        previous_status = obj.get("status") or {}
        conditions = [Condition.from_dict(c) for c in previous_status.get("conditions") or ()]
        previous_valid = find_condition(conditions, CONDITION_VALID)
        previous_valid_status = previous_valid.status if previous_valid is not None else None
        now = self._now()

        status: dict[str, Any] = copy.deepcopy(previous_status)
        status["observedGeneration"] = int((obj.get("metadata") or {}).get("generation", 1) or 1)

        if report.valid:
            form = Form.from_object(obj)
            nodes = await list_form_nodes(self._client, namespace, name)
            stats = compute_stats(form, nodes, now)
            status["totalNodes"] = stats.total_nodes
            status["readyNodes"] = stats.ready_nodes
            set_condition(
                conditions,
                Condition(CONDITION_VALID, ConditionStatus.TRUE, "ValidationPassed", "Template validation passed"),
                now,
            )
            set_condition(conditions, _applied_condition(stats.total_nodes, stats.ready_nodes), now)
            rollout: RolloutState | None = None
            if form.max_skew > 0:
                rollout = next_rollout_state(form.rollout_status, stats, form, now)
                status["rollout"] = rollout.to_dict()
                await self._rollout_event(obj, form.rollout_status, rollout)
            else:
                status.pop("rollout", None)
            publish_rollout_metrics(form, rollout)
            if previous_valid_status != ConditionStatus.TRUE:
                await self._recorder.record(
                    obj, EventType.NORMAL, "ValidationPassed", "Template validation passed successfully"
                )
        else:
            set_condition(
                conditions,
                Condition(
                    CONDITION_VALID,
                    ConditionStatus.FALSE,
                    "ValidationFailed",
                    f"Validation errors: {'; '.join(report.messages)}",
                ),
                now,
            )
            if previous_valid_status != ConditionStatus.FALSE:
                await self._validation_failed_events(obj, report, hub_id, namespace)
            log.info("form_validation_failed", errors=report.messages)

        status["conditions"] = [c.to_dict() for c in conditions]
        await write_status(self._client, obj, status, self._config.status_update_retries)
        return ReconcileResult.after(FORM_RESYNC_SECONDS)

    async def _rollout_event(self, obj: dict[str, Any], previous: RolloutState | None, rollout: RolloutState) -> None:
        """One event per rollout phase change or new target generation."""
        if previous is None:
            if rollout.phase == RolloutPhase.IDLE:
                return
        elif previous.phase == rollout.phase and previous.target_generation == rollout.target_generation:
            return
        reason, event_type = _ROLLOUT_EVENTS[rollout.phase]
        await self._recorder.record(obj, event_type, reason, rollout.message)

    async def _validation_failed_events(
        self, obj: dict[str, Any], report: ValidationReport, hub_id: str, namespace: str
    ) -> None:
        if report.hub_missing:
            await self._recorder.record(
                obj,
                EventType.WARNING,
                "HubNotFound",
                f"Referenced LynqHub '{hub_id}' not found in namespace '{namespace}'",
            )
        if report.duplicate_ids:
            await self._recorder.record(
                obj, EventType.WARNING, "DuplicateResourceIDs", f"Found duplicate resource IDs: {report.duplicate_ids}"
            )
        if report.dependency_error:
            await self._recorder.record(
                obj,
                EventType.WARNING,
                "DependencyValidationFailed",
                f"Dependency graph validation failed: {report.dependency_error}",
            )
        await self._recorder.record(
            obj, EventType.WARNING, "ValidationFailed", f"Template validation failed: {report.messages}"
        )


def _applied_condition(total: int, ready: int) -> Condition:
    if total == 0:
        return Condition(CONDITION_APPLIED, ConditionStatus.FALSE, "NoNodes", "No nodes using this template")
    if ready == total:
        return Condition(CONDITION_APPLIED, ConditionStatus.TRUE, "AllNodesReady", f"All {total} nodes ready")
    return Condition(CONDITION_APPLIED, ConditionStatus.FALSE, "NotAllNodesReady", f"{ready}/{total} nodes ready")
