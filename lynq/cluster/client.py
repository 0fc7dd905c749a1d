"""Cluster API access.

:class:`KubeClient` is the seam between the controllers and the Kubernetes
API.  Objects cross it as plain dicts.  Implementations translate library
exceptions into :mod:`lynq.errors`, so nothing above this module handles
``ApiException``.
"""

from __future__ import annotations

import abc
from typing import Any

from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic import DynamicClient  # type: ignore[import-untyped]
from kubernetes_asyncio.dynamic.exceptions import (  # type: ignore[import-untyped]
    DynamicApiError,
    ResourceNotUniqueError,
)
from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError as DiscoveryNotFoundError

from lynq.errors import ConcurrentModificationError, ResourceNotFoundError, TransientAPIError
from lynq.models.labels import API_GROUP, API_VERSION, PLURALS
from lynq.observability.logging import get_logger

_logger = get_logger("cluster")

CONTENT_MERGE_PATCH = "application/merge-patch+json"
CONTENT_STRATEGIC_MERGE_PATCH = "application/strategic-merge-patch+json"

_API_ERRORS = (ApiException, DynamicApiError, OSError, TimeoutError)


def object_ref(obj: dict[str, Any]) -> tuple[str, str, str, str]:
    """Return ``(apiVersion, kind, namespace, name)`` of *obj*."""
    metadata = obj.get("metadata") or {}
    return (
        str(obj.get("apiVersion", "")),
        str(obj.get("kind", "")),
        str(metadata.get("namespace", "") or ""),
        str(metadata.get("name", "")),
    )


class KubeClient(abc.ABC):
    """Asynchronous CRUD over arbitrary kinds.

    ``namespace`` is an empty string for cluster-scoped objects and, for
    :meth:`list`, means "all namespaces".  An empty ``api_version`` resolves the
    kind through discovery.
    """

    @abc.abstractmethod
    async def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the object, or None when it does not exist."""

    @abc.abstractmethod
    async def list(
        self, api_version: str, kind: str, namespace: str = "", label_selector: str = ""
    ) -> list[dict[str, Any]]:
        """List objects of one kind."""

    @abc.abstractmethod
    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create *obj*; a 409 (already exists) raises ConcurrentModificationError."""

    @abc.abstractmethod
    async def apply(self, obj: dict[str, Any], field_manager: str, force: bool = False) -> dict[str, Any]:
        """Server-side apply *obj* as *field_manager*."""

    @abc.abstractmethod
    async def patch(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        body: dict[str, Any],
        strategic: bool = False,
    ) -> dict[str, Any]:
        """JSON merge patch (or strategic merge patch for built-in kinds).

        Raises:
            ResourceNotFoundError: the object does not exist.
        """

    @abc.abstractmethod
    async def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Full update; ``metadata.resourceVersion`` is honoured as a precondition."""

    @abc.abstractmethod
    async def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        """Delete the object in the background; returns False if it was already gone."""

    @abc.abstractmethod
    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Write the ``status`` subresource of a Lynq object.

        Raises:
            ConcurrentModificationError: ``resourceVersion`` is stale.
        """


def _status_of(exc: Exception) -> int | None:
    status = getattr(exc, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def translate_error(exc: Exception, kind: str, namespace: str, name: str, verb: str) -> Exception:
    """Map a client library exception onto the Lynq error taxonomy."""
    status = _status_of(exc)
    if status == 404:
        return ResourceNotFoundError(kind, namespace, name)
    if status == 409:
        return ConcurrentModificationError(f"{verb} {kind} {namespace}/{name}: conflict")
    reason = getattr(exc, "reason", None) or str(exc)
    return TransientAPIError(f"{verb} {kind} {namespace}/{name}: {reason}", status=status)


class KubernetesClient(KubeClient):
    """:class:`KubeClient` backed by kubernetes-asyncio.

    Arbitrary kinds go through the dynamic client; Lynq status writes use
    the custom objects API.
    """

    def __init__(self, api_client: Any) -> None:
        self._api_client = api_client
        self._dynamic: Any = None
        self._custom: Any = None

    async def start(self) -> None:
        self._dynamic = await DynamicClient(self._api_client)
        self._custom = k8s_client.CustomObjectsApi(self._api_client)

    async def close(self) -> None:
        await self._api_client.close()

    async def _resource(self, api_version: str, kind: str) -> Any:
        try:
            if api_version:
                return await self._dynamic.resources.get(api_version=api_version, kind=kind)
            return await self._dynamic.resources.get(kind=kind)
        except (DiscoveryNotFoundError, ResourceNotUniqueError, *_API_ERRORS) as exc:
            raise TransientAPIError(f"unknown kind {api_version}/{kind}: {exc}") from exc

    @staticmethod
    def _ns(resource: Any, namespace: str) -> str | None:
        return namespace or None if getattr(resource, "namespaced", True) else None

    async def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        resource = await self._resource(api_version, kind)
        try:
            result = await self._dynamic.get(resource, name=name, namespace=self._ns(resource, namespace))
        except _API_ERRORS as exc:
            err = translate_error(exc, kind, namespace, name, "get")
            if isinstance(err, ResourceNotFoundError):
                return None
            raise err from exc
        return result.to_dict()

    async def list(
        self, api_version: str, kind: str, namespace: str = "", label_selector: str = ""
    ) -> list[dict[str, Any]]:
        resource = await self._resource(api_version, kind)
        kwargs: dict[str, Any] = {"namespace": self._ns(resource, namespace)}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            result = await self._dynamic.get(resource, **kwargs)
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, "*", "list") from exc
        items = result.to_dict().get("items") or []
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        api_version, kind, namespace, name = object_ref(obj)
        resource = await self._resource(api_version, kind)
        try:
            result = await self._dynamic.create(resource, body=obj, namespace=self._ns(resource, namespace))
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, name, "create") from exc
        return result.to_dict()

    async def apply(self, obj: dict[str, Any], field_manager: str, force: bool = False) -> dict[str, Any]:
        api_version, kind, namespace, name = object_ref(obj)
        resource = await self._resource(api_version, kind)
        try:
            result = await self._dynamic.server_side_apply(
                resource,
                body=obj,
                name=name,
                namespace=self._ns(resource, namespace),
                field_manager=field_manager,
                force_conflicts=force,
            )
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, name, "apply") from exc
        return result.to_dict()

    async def patch(
        self,
        api_version: str,
        kind: str,
        namespace: str,
        name: str,
        body: dict[str, Any],
        strategic: bool = False,
    ) -> dict[str, Any]:
        resource = await self._resource(api_version, kind)
        try:
            result = await self._dynamic.patch(
                resource,
                body=body,
                name=name,
                namespace=self._ns(resource, namespace),
                content_type=CONTENT_STRATEGIC_MERGE_PATCH if strategic else CONTENT_MERGE_PATCH,
            )
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, name, "patch") from exc
        return result.to_dict()

    async def replace(self, obj: dict[str, Any]) -> dict[str, Any]:
        api_version, kind, namespace, name = object_ref(obj)
        resource = await self._resource(api_version, kind)
        try:
            result = await self._dynamic.replace(
                resource, body=obj, name=name, namespace=self._ns(resource, namespace)
            )
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, name, "replace") from exc
        return result.to_dict()

    async def delete(self, api_version: str, kind: str, namespace: str, name: str) -> bool:
        resource = await self._resource(api_version, kind)
        try:
            await self._dynamic.delete(
                resource,
                name=name,
                namespace=self._ns(resource, namespace),
                body={"propagationPolicy": "Background"},
            )
        except _API_ERRORS as exc:
            err = translate_error(exc, kind, namespace, name, "delete")
            if isinstance(err, ResourceNotFoundError):
                return False
            raise err from exc
        return True

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        _, kind, namespace, name = object_ref(obj)
        plural = PLURALS.get(kind)
        if plural is None:
            raise ValueError(f"update_status only supports Lynq kinds, got {kind!r}")
        try:
            return await self._custom.replace_namespaced_custom_object_status(
                API_GROUP, API_VERSION, namespace, plural, name, obj
            )
        except _API_ERRORS as exc:
            raise translate_error(exc, kind, namespace, name, "update status") from exc
