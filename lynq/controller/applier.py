"""Application of a single declared resource for a node.

Rendering produces the desired object; :meth:`ResourceApplier.apply` then
runs the conflict check, the creation policy, re-adoption of orphans,
ignore-field preservation and the write itself.  Readiness is not checked
here; the node reconciler polls it without blocking.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.errors import ConcurrentModificationError, ConflictError, TemplateRenderError
from lynq.fieldfilter import FieldFilter
from lynq.models.form import (
    BUILTIN_API_VERSIONS,
    ConflictPolicy,
    CreationPolicy,
    DeletionPolicy,
    PatchStrategy,
    ResourceSpec,
)
from lynq.models.labels import (
    ANNOTATION_CREATED_ONCE,
    ANNOTATION_DELETION_POLICY,
    GROUP_VERSION,
    KIND_NODE,
    LABEL_NODE,
    LABEL_NODE_NAMESPACE,
    LABEL_ORPHANED,
    ORPHAN_ANNOTATIONS,
)
from lynq.models.node import AppliedResource, NodeInstance
from lynq.observability.logging import get_logger
from lynq.template import TemplateEngine
from lynq.template.engine import strip_type_marker

_logger = get_logger("applier")

# Server-managed metadata that must not be sent back on apply
_SERVER_FIELDS = ("resourceVersion", "uid", "creationTimestamp", "generation", "managedFields", "selfLink")


class ApplyAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    ADOPTED = "adopted"
    UNCHANGED = "unchanged"


@dataclass
class RenderedResource:
    """A declared resource with every template resolved."""

    spec: ResourceSpec
    record: AppliedResource
    desired: dict[str, Any]

    @property
    def api_version(self) -> str:
        return self.spec.api_version


@dataclass
class ApplyOutcome:
    rendered: RenderedResource
    action: ApplyAction
    live: dict[str, Any]


def tracked_by(obj: dict[str, Any], node: NodeInstance) -> bool:
    """True when *obj* is tracked by *node* through labels or an owner reference."""
    metadata = obj.get("metadata") or {}
    labels = metadata.get("labels") or {}
    if labels.get(LABEL_NODE) == node.name and labels.get(LABEL_NODE_NAMESPACE) == node.namespace:
        return True
    if node.uid:
        return any(ref.get("uid") == node.uid for ref in metadata.get("ownerReferences") or ())
    return False


def is_orphaned(obj: dict[str, Any]) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(LABEL_ORPHANED) == "true"


def owner_reference(node: NodeInstance) -> dict[str, Any]:
    return {
        "apiVersion": GROUP_VERSION,
        "kind": KIND_NODE,
        "name": node.name,
        "uid": node.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


class ResourceApplier:
    """Renders and writes declared resources on behalf of one node at a time."""

    def __init__(
        self,
        client: KubeClient,
        engine: TemplateEngine,
        field_manager: str = "lynq",
    ) -> None:
        self._client = client
        self._engine = engine
        self._field_manager = field_manager

    # ------------------------------------------------------------------
    # Render
    # ------------------------------------------------------------------

    def render(self, node: NodeInstance, spec: ResourceSpec, variables: dict[str, Any]) -> RenderedResource:
        """Resolve name, namespace, metadata and body of *spec*.

        Raises:
            TemplateRenderError: a template failed or the name rendered empty.
        """
        name = strip_type_marker(self._engine.render(spec.name_template, variables)).strip()
        if not name:
            raise TemplateRenderError(spec.name_template, "rendered name is empty")
        if spec.cluster_scoped:
            namespace = ""
        else:
            target = strip_type_marker(self._engine.render(spec.target_namespace, variables)).strip()
            namespace = target or node.namespace

        body = self._engine.render_value(copy.deepcopy(spec.body), variables)
        if not isinstance(body, dict):
            raise TemplateRenderError(spec.id, "manifest body must be a mapping")
        body["apiVersion"] = spec.api_version
        body["kind"] = spec.kind
        body.pop("status", None)
        metadata = dict(body.get("metadata") or {})
        for field_name in _SERVER_FIELDS:
            metadata.pop(field_name, None)
        metadata["name"] = name
        if namespace:
            metadata["namespace"] = namespace
        else:
            metadata.pop("namespace", None)

        labels = {str(k): str(v) for k, v in (metadata.get("labels") or {}).items()}
        labels.update(self._engine.render_map(spec.labels_template, variables))
        labels[LABEL_NODE] = node.name
        labels[LABEL_NODE_NAMESPACE] = node.namespace
        labels.pop(LABEL_ORPHANED, None)
        metadata["labels"] = labels

        annotations = {str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()}
        annotations.update(self._engine.render_map(spec.annotations_template, variables))
        annotations[ANNOTATION_DELETION_POLICY] = str(spec.deletion_policy)
        for key in ORPHAN_ANNOTATIONS:
            annotations.pop(key, None)
        metadata["annotations"] = annotations

        # Owner reference only for same-namespace Delete resources
        if namespace and namespace == node.namespace and spec.deletion_policy == DeletionPolicy.DELETE and node.uid:
            metadata["ownerReferences"] = [owner_reference(node)]
        else:
            metadata.pop("ownerReferences", None)
        body["metadata"] = metadata

        record = AppliedResource(kind=spec.kind, namespace=namespace, name=name, id=spec.id)
        return RenderedResource(spec=spec, record=record, desired=body)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def apply(self, node: NodeInstance, rendered: RenderedResource) -> ApplyOutcome:
        """Write *rendered* according to its policies.

        Raises:
            ConflictError: the object belongs to someone else under ``Stuck``,
                or server-side apply hit a field manager conflict.
            TransientAPIError: any API failure.
        """
        spec = rendered.spec
        record = rendered.record
        desired = copy.deepcopy(rendered.desired)
        log = _logger.bind(node=node.name, namespace=record.namespace, kind=record.kind, name=record.name, id=spec.id)

        existing = await self._client.get(spec.api_version, spec.kind, record.namespace, record.name)

        if existing is None:
            if spec.creation_policy == CreationPolicy.ONCE:
                desired["metadata"]["annotations"][ANNOTATION_CREATED_ONCE] = "true"
            FieldFilter(spec.ignore_fields).preserve_ignored_fields(desired, None)
            live = await self._create(spec, desired)
            log.info("resource_created", policy=str(spec.patch_strategy))
            return ApplyOutcome(rendered=rendered, action=ApplyAction.CREATED, live=live)

        adopted = False
        if is_orphaned(existing):
            existing = await self._readopt(rendered, desired)
            adopted = True
            log.info("orphan_readopted")
        elif not tracked_by(existing, node):
            if spec.conflict_policy == ConflictPolicy.STUCK:
                raise ConflictError(
                    record.kind,
                    record.namespace,
                    record.name,
                    f"object exists and is not managed by LynqNode {node.key}",
                )
            log.warning("conflict_force_takeover")

        if spec.creation_policy == CreationPolicy.ONCE:
            live = await self._mark_once(rendered, desired, existing)
            return ApplyOutcome(
                rendered=rendered, action=ApplyAction.ADOPTED if adopted else ApplyAction.UNCHANGED, live=live
            )

        FieldFilter(spec.ignore_fields).preserve_ignored_fields(desired, existing)
        live = await self._update(spec, desired, existing)
        log.debug("resource_updated", policy=str(spec.patch_strategy))
        action = ApplyAction.ADOPTED if adopted else ApplyAction.UPDATED
        return ApplyOutcome(rendered=rendered, action=action, live=live)

    async def _create(self, spec: ResourceSpec, desired: dict[str, Any]) -> dict[str, Any]:
        if spec.patch_strategy == PatchStrategy.APPLY:
            return await self._server_side_apply(spec, desired)
        return await self._client.create(desired)

    async def _update(self, spec: ResourceSpec, desired: dict[str, Any], existing: dict[str, Any]) -> dict[str, Any]:
        metadata = desired["metadata"]
        if spec.patch_strategy == PatchStrategy.APPLY:
            return await self._server_side_apply(spec, desired)
        if spec.patch_strategy == PatchStrategy.MERGE:
            return await self._client.patch(
                spec.api_version,
                spec.kind,
                metadata.get("namespace", ""),
                metadata["name"],
                desired,
                strategic=BUILTIN_API_VERSIONS.get(spec.kind) == spec.api_version,
            )
        metadata["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion", "")
        return await self._client.replace(desired)

    async def _server_side_apply(self, spec: ResourceSpec, desired: dict[str, Any]) -> dict[str, Any]:
        force = spec.conflict_policy == ConflictPolicy.FORCE
        try:
            return await self._client.apply(desired, field_manager=self._field_manager, force=force)
        except ConcurrentModificationError as exc:
            metadata = desired["metadata"]
            raise ConflictError(
                spec.kind, metadata.get("namespace", ""), metadata["name"], "field manager conflict on apply"
            ) from exc

    async def _readopt(self, rendered: RenderedResource, desired: dict[str, Any]) -> dict[str, Any]:
        """Clear orphan markers and restore tracking metadata."""
        metadata = desired["metadata"]
        labels = metadata["labels"]
        patch: dict[str, Any] = {
            "metadata": {
                "labels": {
                    LABEL_ORPHANED: None,
                    LABEL_NODE: labels[LABEL_NODE],
                    LABEL_NODE_NAMESPACE: labels[LABEL_NODE_NAMESPACE],
                },
                "annotations": {key: None for key in ORPHAN_ANNOTATIONS},
            }
        }
        if "ownerReferences" in metadata:
            patch["metadata"]["ownerReferences"] = metadata["ownerReferences"]
        record = rendered.record
        return await self._client.patch(rendered.api_version, record.kind, record.namespace, record.name, patch)

    async def _mark_once(
        self, rendered: RenderedResource, desired: dict[str, Any], existing: dict[str, Any]
    ) -> dict[str, Any]:
        """Ensure tracking metadata on a Once object without touching its content."""
        current = existing.get("metadata") or {}
        current_labels = current.get("labels") or {}
        current_annotations = current.get("annotations") or {}
        wanted_labels = {k: desired["metadata"]["labels"][k] for k in (LABEL_NODE, LABEL_NODE_NAMESPACE)}
        wanted_annotations = {
            ANNOTATION_CREATED_ONCE: "true",
            ANNOTATION_DELETION_POLICY: desired["metadata"]["annotations"][ANNOTATION_DELETION_POLICY],
        }
        label_patch = {k: v for k, v in wanted_labels.items() if current_labels.get(k) != v}
        annotation_patch = {k: v for k, v in wanted_annotations.items() if current_annotations.get(k) != v}
        if not label_patch and not annotation_patch:
            return existing
        patch: dict[str, Any] = {"metadata": {}}
        if label_patch:
            patch["metadata"]["labels"] = label_patch
        if annotation_patch:
            patch["metadata"]["annotations"] = annotation_patch
        record = rendered.record
        return await self._client.patch(rendered.api_version, record.kind, record.namespace, record.name, patch)
