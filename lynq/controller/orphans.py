"""Release of resources that a node no longer declares.

A released object's fate is decided by the ``lynq.sh/deletion-policy``
annotation written when it was applied, never by the current template:
the declaring entry may be gone.  ``Delete`` removes the object; ``Retain``
keeps it, marks it orphaned and strips the node's tracking metadata.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.controller.applier import is_orphaned, tracked_by
from lynq.errors import ResourceNotFoundError, TransientAPIError
from lynq.models.form import DeletionPolicy, api_version_for_kind
from lynq.models.labels import (
    ANNOTATION_DELETION_POLICY,
    ANNOTATION_ORPHANED_AT,
    ANNOTATION_ORPHANED_REASON,
    LABEL_NODE,
    LABEL_NODE_NAMESPACE,
    LABEL_ORPHANED,
)
from lynq.models.node import AppliedResource, NodeInstance
from lynq.models.times import format_time, utc_now
from lynq.observability import metrics
from lynq.observability.logging import get_logger

_logger = get_logger("orphans")


class ReleaseAction(StrEnum):
    DELETED = "deleted"
    RETAINED = "retained"
    GONE = "gone"
    SKIPPED = "skipped"  # no longer tracked by this node


@dataclass
class ReleaseReport:
    """Result of releasing a batch of records."""

    actions: dict[str, ReleaseAction] = field(default_factory=dict)
    pending: list[AppliedResource] = field(default_factory=list)  # must be retried
    error: TransientAPIError | None = None


def removed_records(
    previous: Iterable[AppliedResource], current_ids: Iterable[str]
) -> list[AppliedResource]:
    """Records whose id is no longer declared, in their original order."""
    current = set(current_ids)
    return [record for record in previous if record.id not in current]


class OrphanManager:
    """Deletes or retains resources released by a node."""

    def __init__(self, client: KubeClient, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._client = client
        self._now = now_fn

    async def release_all(
        self,
        node: NodeInstance,
        records: Iterable[AppliedResource],
        reason: str,
        keep: Iterable[tuple[str, str, str]] = (),
    ) -> ReleaseReport:
        """Release every record, continuing past failures.

        *keep* lists ``(kind, namespace, name)`` keys still declared under
        another id; those objects are left alone.  Records that failed with a
        transient error are returned in ``pending`` and the first error in
        ``error``.
        """
        keep_keys = set(keep)
        report = ReleaseReport()
        for record in records:
            if (record.kind, record.namespace, record.name) in keep_keys:
                report.actions[record.id] = ReleaseAction.SKIPPED
                continue
            try:
                report.actions[record.id] = await self.release(node, record, reason)
            except TransientAPIError as exc:
                _logger.warning(
                    "orphan_release_failed",
                    node=node.name,
                    namespace=record.namespace,
                    kind=record.kind,
                    name=record.name,
                    error=str(exc),
                )
                report.pending.append(record)
                if report.error is None:
                    report.error = exc
        return report

    async def release(self, node: NodeInstance, record: AppliedResource, reason: str) -> ReleaseAction:
        """Release one record.

        Raises:
            TransientAPIError: a read or write failed.
        """
        api_version = api_version_for_kind(record.kind)
        obj = await self._client.get(api_version, record.kind, record.namespace, record.name)
        if obj is None:
            return ReleaseAction.GONE
        if is_orphaned(obj) or not tracked_by(obj, node):
            _logger.debug("orphan_not_tracked", node=node.name, kind=record.kind, name=record.name)
            return ReleaseAction.SKIPPED

        annotations = (obj.get("metadata") or {}).get("annotations") or {}
        policy = annotations.get(ANNOTATION_DELETION_POLICY, str(DeletionPolicy.DELETE))
        log = _logger.bind(
            node=node.name, namespace=record.namespace, kind=record.kind, name=record.name, id=record.id, reason=reason
        )
        if policy == DeletionPolicy.RETAIN:
            try:
                await self._client.patch(
                    api_version, record.kind, record.namespace, record.name, self._orphan_patch(obj, node, reason)
                )
            except ResourceNotFoundError:
                return ReleaseAction.GONE
            metrics.orphaned_resources_total.labels(
                namespace=record.namespace, kind=record.kind, reason=reason
            ).inc()
            log.info("resource_orphaned")
            return ReleaseAction.RETAINED

        if not await self._client.delete(api_version, record.kind, record.namespace, record.name):
            return ReleaseAction.GONE
        log.info("resource_deleted")
        return ReleaseAction.DELETED

    def _orphan_patch(self, obj: dict[str, Any], node: NodeInstance, reason: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "labels": {LABEL_NODE: None, LABEL_NODE_NAMESPACE: None, LABEL_ORPHANED: "true"},
            "annotations": {
                ANNOTATION_ORPHANED_AT: format_time(self._now()),
                ANNOTATION_ORPHANED_REASON: reason,
            },
        }
        refs = (obj.get("metadata") or {}).get("ownerReferences") or []
        remaining = [ref for ref in refs if ref.get("uid") != node.uid]
        if len(remaining) != len(refs):
            metadata["ownerReferences"] = remaining or None
        return {"metadata": metadata}
