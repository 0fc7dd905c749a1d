"""Per-kind readiness predicates for managed objects.

Objects are plain dicts as returned by the cluster API.  Kinds without a
dedicated rule fall back to a ``Ready`` condition lookup; an object without
any conditions is assumed ready once it exists.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.errors import ReadinessTimeoutError
from lynq.observability.logging import get_logger

_logger = get_logger("readiness")

WAIT_TICK_SECONDS = 2.0

_IMMEDIATE_KINDS = frozenset(
    {"ConfigMap", "Secret", "ServiceAccount", "CronJob", "PodDisruptionBudget", "NetworkPolicy"}
)


def _nested(obj: dict[str, Any], *path: str) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _int(obj: dict[str, Any], *path: str, default: int = 0) -> int:
    value = _nested(obj, *path)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _conditions(obj: dict[str, Any]) -> list[dict[str, Any]] | None:
    conditions = _nested(obj, "status", "conditions")
    if conditions is None:
        return None
    return [c for c in conditions if isinstance(c, dict)]


def _condition_true(obj: dict[str, Any], cond_type: str) -> bool:
    return any(c.get("type") == cond_type and c.get("status") == "True" for c in _conditions(obj) or ())


def _generation_observed(obj: dict[str, Any]) -> bool:
    return _int(obj, "metadata", "generation") == _int(obj, "status", "observedGeneration")


# ---------------------------------------------------------------------------
# Per-kind predicates
# ---------------------------------------------------------------------------


def _namespace_ready(obj: dict[str, Any]) -> bool:
    return _nested(obj, "status", "phase") == "Active"


def _service_ready(obj: dict[str, Any]) -> bool:
    if _nested(obj, "spec", "type") == "LoadBalancer":
        return bool(_nested(obj, "status", "loadBalancer", "ingress"))
    return True


def _deployment_ready(obj: dict[str, Any]) -> bool:
    if not _generation_observed(obj):
        return False
    replicas = _int(obj, "spec", "replicas", default=1)
    if replicas == 0:
        return False
    return (
        _int(obj, "status", "updatedReplicas") == replicas
        and _int(obj, "status", "readyReplicas") == replicas
        and _int(obj, "status", "availableReplicas") == replicas
    )


def _statefulset_ready(obj: dict[str, Any]) -> bool:
    if not _generation_observed(obj):
        return False
    replicas = _int(obj, "spec", "replicas", default=1)
    if replicas == 0:
        return False
    return (
        _int(obj, "status", "updatedReplicas") == replicas
        and _int(obj, "status", "readyReplicas") == replicas
        and _int(obj, "status", "currentReplicas") == replicas
    )


def _daemonset_ready(obj: dict[str, Any]) -> bool:
    if not _generation_observed(obj):
        return False
    desired = _int(obj, "status", "desiredNumberScheduled")
    if desired == 0:
        return False
    return all(
        _int(obj, "status", key) == desired
        for key in ("currentNumberScheduled", "updatedNumberScheduled", "numberReady", "numberAvailable")
    )


def _job_ready(obj: dict[str, Any]) -> bool:
    for cond in _conditions(obj) or ():
        if cond.get("status") != "True":
            continue
        if cond.get("type") == "Complete":
            return True
        if cond.get("type") == "Failed":
            return False
    return _int(obj, "status", "succeeded") > 0


def _ingress_ready(obj: dict[str, Any]) -> bool:
    if _nested(obj, "status", "loadBalancer", "ingress"):
        return True
    # Some ingress controllers never populate status
    return bool(_nested(obj, "spec", "rules"))


def _pvc_ready(obj: dict[str, Any]) -> bool:
    return _nested(obj, "status", "phase") == "Bound"


def _hpa_ready(obj: dict[str, Any]) -> bool:
    return _condition_true(obj, "AbleToScale")


def _generic_ready(obj: dict[str, Any]) -> bool:
    if _conditions(obj) is None:
        return True
    return _condition_true(obj, "Ready")


_PREDICATES: dict[str, Callable[[dict[str, Any]], bool]] = {
    "Namespace": _namespace_ready,
    "Service": _service_ready,
    "Deployment": _deployment_ready,
    "StatefulSet": _statefulset_ready,
    "DaemonSet": _daemonset_ready,
    "Job": _job_ready,
    "Ingress": _ingress_ready,
    "PersistentVolumeClaim": _pvc_ready,
    "HorizontalPodAutoscaler": _hpa_ready,
}


def is_ready(obj: dict[str, Any]) -> bool:
    """Return True when *obj* is ready according to its kind's rule."""
    kind = str(obj.get("kind", ""))
    if kind in _IMMEDIATE_KINDS:
        return True
    return _PREDICATES.get(kind, _generic_ready)(obj)


def readiness_message(obj: dict[str, Any]) -> str:
    """Human-readable readiness summary used in status and events."""
    if is_ready(obj):
        return "Resource is ready"
    kind = obj.get("kind")
    if kind == "Deployment":
        return (
            f"Waiting for replicas: {_int(obj, 'status', 'availableReplicas')}/"
            f"{_int(obj, 'spec', 'replicas', default=1)} available"
        )
    if kind == "StatefulSet":
        return (
            f"Waiting for replicas: {_int(obj, 'status', 'readyReplicas')}/"
            f"{_int(obj, 'spec', 'replicas', default=1)} ready"
        )
    if kind == "Job":
        return f"Job status: {_int(obj, 'status', 'succeeded')} succeeded, {_int(obj, 'status', 'failed')} failed"
    if kind == "HorizontalPodAutoscaler":
        return (
            f"HPA status: {_int(obj, 'status', 'currentReplicas')} current, "
            f"{_int(obj, 'status', 'desiredReplicas')} desired replicas"
        )
    return "Waiting for resource to be ready"


async def wait_for_ready(
    client: KubeClient,
    api_version: str,
    kind: str,
    namespace: str,
    name: str,
    timeout_seconds: float,
    tick_seconds: float = WAIT_TICK_SECONDS,
) -> dict[str, Any]:
    """Block until the object is ready or *timeout_seconds* elapse.

    The reconcile path never calls this; it checks readiness once per pass
    and requeues.  Cancelling the calling task aborts the wait; a read still in
    flight at the deadline is cancelled.

    Raises:
        ReadinessTimeoutError: the deadline passed before the object was ready.
        TransientAPIError: a read failed for a reason other than not-found.
    """
    try:
        async with asyncio.timeout(timeout_seconds):
            while True:
                await asyncio.sleep(tick_seconds)
                current = await client.get(api_version, kind, namespace, name)
                if current is not None and is_ready(current):
                    _logger.debug("resource_ready", kind=kind, namespace=namespace, name=name)
                    return current
    except TimeoutError as exc:
        raise ReadinessTimeoutError(kind, namespace, name, timeout_seconds) from exc
