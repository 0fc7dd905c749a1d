"""LynqHub synchronisation: turns data-source rows into LynqNode objects.

Each active row produces one node per form that references the hub, named
``<uid>-<form>``.  Row data changes reach existing nodes immediately through
annotations; a new form generation is pushed to a node only when the rollout
gate admits it.
"""

from __future__ import annotations

import abc
import copy
import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.cluster.events import EventRecorder, EventType
from lynq.controller.result import ReconcileResult
from lynq.controller.rollout import admit, compute_stats
from lynq.controller.status import write_status
from lynq.errors import DataSourceError, TransientAPIError
from lynq.models.config import ControllerConfig
from lynq.models.form import RESOURCE_FIELDS, Form, resource_lists
from lynq.models.hub import Hub, NodeRow
from lynq.models.labels import (
    ANNOTATION_ACTIVATE,
    ANNOTATION_EXTRA,
    ANNOTATION_HOST_OR_URL,
    ANNOTATION_TEMPLATE_GENERATION,
    ANNOTATION_TEMPLATE_UPDATED_AT,
    GROUP_VERSION,
    KIND_FORM,
    KIND_HUB,
    KIND_NODE,
    LABEL_HUB,
)
from lynq.models.node import (
    CONDITION_DEGRADED,
    CONDITION_READY,
    Condition,
    ConditionStatus,
    NodeInstance,
    condition_is_true,
    set_condition,
)
from lynq.models.times import format_time, utc_now
from lynq.observability import metrics
from lynq.observability.logging import get_logger

_logger = get_logger("hub_controller")

# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------


class DataSource(abc.ABC):
    """Fetches the current rows of one hub."""

    @abc.abstractmethod
    async def fetch_rows(self, hub: Hub) -> list[NodeRow]:
        """Return every row of *hub*, active or not.

        Raises:
            DataSourceError: the source could not be queried.
        """


DataSourceFactory = Callable[[Hub], DataSource]

_SOURCES: dict[str, DataSourceFactory] = {}


def register_data_source(source_type: str, factory: DataSourceFactory) -> None:
    """Register *factory* for hubs whose ``spec.source.type`` is *source_type*."""
    _SOURCES[source_type] = factory


def unregister_data_source(source_type: str) -> None:
    _SOURCES.pop(source_type, None)


def get_data_source(hub: Hub) -> DataSource:
    factory = _SOURCES.get(hub.source_type)
    if factory is None:
        raise DataSourceError(hub.name, f"unsupported data source type {hub.source_type!r}")
    return factory(hub)


def rows_from_records(hub: Hub, records: Iterable[Mapping[str, Any]]) -> list[NodeRow]:
    """Map raw source records onto rows using the hub's column mappings.

    ``valueMappings`` names the columns for ``uid``, ``activate`` and
    ``hostOrUrl``; ``extraValueMappings`` maps template variable names to
    further columns.  Records without a uid are dropped.
    """
    uid_col = hub.value_mappings.get("uid", "uid")
    activate_col = hub.value_mappings.get("activate", "activate")
    host_col = hub.value_mappings.get("hostOrUrl", "hostOrUrl")
    rows: list[NodeRow] = []
    for record in records:
        uid = _cell(record.get(uid_col))
        if not uid:
            _logger.debug("row_without_uid", hub=hub.name, namespace=hub.namespace)
            continue
        rows.append(
            NodeRow(
                uid=uid,
                activate=_cell(record.get(activate_col)),
                host_or_url=_cell(record.get(host_col)),
                extra={var: _cell(record.get(col)) for var, col in hub.extra_value_mappings.items()},
            )
        )
    return rows


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ---------------------------------------------------------------------------
# Node objects
# ---------------------------------------------------------------------------


def node_name(uid: str, form_name: str) -> str:
    return f"{uid}-{form_name}"


def row_annotations(row: NodeRow) -> dict[str, str]:
    return {
        ANNOTATION_ACTIVATE: row.activate,
        ANNOTATION_HOST_OR_URL: row.host_or_url,
        ANNOTATION_EXTRA: json.dumps(row.extra, sort_keys=True),
    }


def build_node(hub: Hub, form: Form, row: NodeRow, now: datetime) -> dict[str, Any]:
    """Return a new LynqNode object for *row* at the form's current generation."""
    return {
        "apiVersion": GROUP_VERSION,
        "kind": KIND_NODE,
        "metadata": {
            "name": node_name(row.uid, form.name),
            "namespace": hub.namespace,
            "labels": {LABEL_HUB: hub.name},
            "annotations": {
                **row_annotations(row),
                ANNOTATION_TEMPLATE_GENERATION: str(form.generation),
                ANNOTATION_TEMPLATE_UPDATED_AT: format_time(now),
            },
        },
        "spec": {"templateRef": form.name, "uid": row.uid, **resource_lists(form.raw_spec)},
    }


def _generation_patch(form: Form, now: datetime) -> dict[str, Any]:
    lists = resource_lists(form.raw_spec)
    return {
        "metadata": {
            "annotations": {
                ANNOTATION_TEMPLATE_GENERATION: str(form.generation),
                ANNOTATION_TEMPLATE_UPDATED_AT: format_time(now),
            }
        },
        # Merge patch: lists the form no longer declares must be nulled out.
        "spec": {k: lists.get(k) for k in RESOURCE_FIELDS},
    }


def _node_failed(node: NodeInstance) -> bool:
    return not node.ready and condition_is_true(node.status.conditions, CONDITION_DEGRADED)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@dataclass
class HubSyncReport:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    rolled: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    forms: int = 0
    desired: int = 0
    ready: int = 0
    failed: int = 0


class HubSyncer:
    """Creates, updates and deletes the LynqNodes of one hub."""

    def __init__(self, client: KubeClient, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._client = client
        self._now = now_fn

    async def sync(self, hub: Hub, rows: Iterable[NodeRow]) -> HubSyncReport:
        now = self._now()
        log = _logger.bind(hub=hub.name, namespace=hub.namespace)
        report = HubSyncReport()

        active: dict[str, NodeRow] = {}
        for row in rows:
            if row.active and row.uid not in active:
                active[row.uid] = row

        forms = await self._hub_forms(hub)
        existing = await self._hub_nodes(hub)
        desired_names: set[str] = set()

        for form in forms:
            form_nodes = [n for n in existing.values() if n.template_ref == form.name]
            stats = compute_stats(form, form_nodes, now)
            stale: list[str] = []
            created = 0
            for uid, row in active.items():
                name = node_name(uid, form.name)
                desired_names.add(name)
                node = existing.get(name)
                if node is None:
                    await self._client.create(build_node(hub, form, row, now))
                    report.created.append(name)
                    created += 1
                    continue
                wanted = row_annotations(row)
                if any(node.annotations.get(k) != v for k, v in wanted.items()):
                    await self._client.patch(
                        GROUP_VERSION, KIND_NODE, hub.namespace, name, {"metadata": {"annotations": wanted}}
                    )
                    report.updated.append(name)
                if node.template_generation != form.generation:
                    stale.append(name)

            # Freshly created nodes are updating until they report Ready.
            updating = stats.updating_nodes + created
            admitted = admit(form.max_skew, updating, stale)
            for name in admitted:
                await self._client.patch(GROUP_VERSION, KIND_NODE, hub.namespace, name, _generation_patch(form, now))
                report.rolled.append(name)
            deferred = sorted(set(stale) - set(admitted))
            if deferred:
                report.deferred.extend(deferred)
                log.info(
                    "rollout_deferred",
                    form=form.name,
                    generation=form.generation,
                    deferred=len(deferred),
                    updating=updating,
                    max_skew=form.max_skew,
                )

        for name in sorted(existing):
            if name in desired_names:
                continue
            await self._client.delete(GROUP_VERSION, KIND_NODE, hub.namespace, name)
            report.deleted.append(name)

        kept = [n for name, n in existing.items() if name in desired_names]
        report.forms = len(forms)
        report.desired = len(desired_names)
        report.ready = sum(1 for n in kept if n.ready)
        report.failed = sum(1 for n in kept if _node_failed(n))

        if report.created or report.updated or report.rolled or report.deleted:
            log.info(
                "hub_synced",
                created=len(report.created),
                updated=len(report.updated),
                rolled=len(report.rolled),
                deleted=len(report.deleted),
            )
        return report

    async def _hub_forms(self, hub: Hub) -> list[Form]:
        forms = []
        for obj in await self._client.list(GROUP_VERSION, KIND_FORM, hub.namespace):
            if (obj.get("spec") or {}).get("hubId") != hub.name:
                continue
            try:
                forms.append(Form.from_object(obj))
            except (TypeError, ValueError) as exc:
                _logger.warning(
                    "form_unparsable",
                    form=(obj.get("metadata") or {}).get("name", ""),
                    namespace=hub.namespace,
                    error=str(exc),
                )
        return sorted(forms, key=lambda f: f.name)

    async def _hub_nodes(self, hub: Hub) -> dict[str, NodeInstance]:
        nodes: dict[str, NodeInstance] = {}
        selector = f"{LABEL_HUB}={hub.name}"
        objs = await self._client.list(GROUP_VERSION, KIND_NODE, hub.namespace, label_selector=selector)
        for obj in objs:
            try:
                node = NodeInstance.from_object(obj)
            except (TypeError, ValueError) as exc:
                _logger.warning(
                    "node_unparsable",
                    node=(obj.get("metadata") or {}).get("name", ""),
                    namespace=hub.namespace,
                    error=str(exc),
                )
                continue
            if node.hub_id == hub.name and not node.being_deleted:
                nodes[node.name] = node
        return nodes


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class HubReconciler:
    """Periodically pulls a hub's rows and syncs its nodes."""

    def __init__(
        self,
        client: KubeClient,
        recorder: EventRecorder,
        config: ControllerConfig | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        source_resolver: Callable[[Hub], DataSource] = get_data_source,
    ) -> None:
        self._client = client
        self._recorder = recorder
        self._config = config or ControllerConfig()
        self._now = now_fn
        self._resolve = source_resolver
        self._syncer = HubSyncer(client, now_fn)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        obj = await self._client.get(GROUP_VERSION, KIND_HUB, namespace, name)
        if obj is None:
            metrics.forget_hub(name, namespace)
            return ReconcileResult.done()
        hub = Hub.from_object(obj)
        log = _logger.bind(hub=name, namespace=namespace)

        status: dict[str, Any] = copy.deepcopy(obj.get("status") or {})
        conditions = [Condition.from_dict(c) for c in status.get("conditions") or ()]
        now = self._now()

        try:
            rows = await self._resolve(hub).fetch_rows(hub)
        except DataSourceError as exc:
            log.warning("hub_source_failed", error=str(exc))
            if set_condition(
                conditions, Condition(CONDITION_READY, ConditionStatus.FALSE, "DataSourceError", str(exc)), now
            ):
                await self._recorder.record(obj, EventType.WARNING, "DataSourceError", str(exc))
            status["conditions"] = [c.to_dict() for c in conditions]
            await write_status(self._client, obj, status, self._config.status_update_retries)
            return ReconcileResult.after(hub.sync_interval_seconds)

        try:
            report = await self._syncer.sync(hub, rows)
        except TransientAPIError:
            log.warning("hub_sync_interrupted")
            raise

        status.update(
            observedGeneration=hub.generation,
            referencingTemplates=report.forms,
            desired=report.desired,
            ready=report.ready,
            failed=report.failed,
            lastSyncTime=format_time(now),
        )
        set_condition(conditions, Condition(CONDITION_READY, ConditionStatus.TRUE, "SyncSucceeded", ""), now)
        status["conditions"] = [c.to_dict() for c in conditions]
        await write_status(self._client, obj, status, self._config.status_update_retries)

        labels = {"hub": name, "namespace": namespace}
        metrics.hub_desired.labels(**labels).set(report.desired)
        metrics.hub_ready.labels(**labels).set(report.ready)
        metrics.hub_failed.labels(**labels).set(report.failed)
        return ReconcileResult.after(hub.sync_interval_seconds)
