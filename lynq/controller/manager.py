"""Controller manager: watch streams and periodic resync feeding the work queues.

Every Lynq kind gets one list-then-watch loop.  A LynqNode event also queues
its form (node counts, rollout status) and its hub (desired/ready/failed
counts); a LynqForm event queues its hub so new generations are pushed
promptly.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import watch
from kubernetes_asyncio.client.exceptions import ApiException

from lynq.cluster.client import KubeClient
from lynq.cluster.events import EventRecorder
from lynq.controller.form import FormReconciler
from lynq.controller.hub import DataSource, HubReconciler, get_data_source
from lynq.controller.node import NodeReconciler
from lynq.controller.queue import Handler, WorkQueue
from lynq.controller.result import ReconcileResult
from lynq.errors import TransientAPIError
from lynq.models.config import ControllerConfig
from lynq.models.hub import Hub
from lynq.models.labels import API_GROUP, API_VERSION, GROUP_VERSION, KIND_FORM, KIND_HUB, KIND_NODE, LABEL_HUB, PLURALS
from lynq.models.times import utc_now
from lynq.observability.logging import bind_reconcile_context, get_logger

_logger = get_logger("manager")

_WATCH_TIMEOUT_SECONDS = 300
_MAX_WATCH_BACKOFF_SECONDS = 30.0


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.rpartition("/")
    return namespace, name


def object_key(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"


def related_keys(kind: str, obj: dict[str, Any]) -> dict[str, list[str]]:
    """Return the queue keys an event on *obj* should trigger, per kind."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace", "")
    spec = obj.get("spec") or {}
    keys: dict[str, list[str]] = {kind: [object_key(obj)]}
    if kind == KIND_NODE:
        if spec.get("templateRef"):
            keys[KIND_FORM] = [f"{namespace}/{spec['templateRef']}"]
        hub = (metadata.get("labels") or {}).get(LABEL_HUB)
        if hub:
            keys[KIND_HUB] = [f"{namespace}/{hub}"]
    elif kind == KIND_FORM and spec.get("hubId"):
        keys[KIND_HUB] = [f"{namespace}/{spec['hubId']}"]
    return keys


class ControllerManager:
    """Owns the reconcilers, their work queues and the watch loops."""

    def __init__(
        self,
        client: KubeClient,
        api_client: Any,
        config: ControllerConfig | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        source_resolver: Callable[[Hub], DataSource] = get_data_source,
    ) -> None:
        self._client = client
        self._api_client = api_client
        self._config = config or ControllerConfig()
        recorder = EventRecorder(client, now_fn)
        self.node_reconciler = NodeReconciler(client, recorder, self._config, now_fn=now_fn)
        self.form_reconciler = FormReconciler(client, recorder, self._config, now_fn=now_fn)
        self.hub_reconciler = HubReconciler(
            client, recorder, self._config, now_fn=now_fn, source_resolver=source_resolver
        )
        self.queues: dict[str, WorkQueue] = {
            KIND_NODE: WorkQueue(
                "lynqnode", self._handler(KIND_NODE, self.node_reconciler), self._config.node_concurrency
            ),
            KIND_FORM: WorkQueue(
                "lynqform", self._handler(KIND_FORM, self.form_reconciler), self._config.form_concurrency
            ),
            KIND_HUB: WorkQueue("lynqhub", self._handler(KIND_HUB, self.hub_reconciler), self._config.hub_concurrency),
        }
        self._synced: set[str] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = False
        self._watchers: dict[str, watch.Watch] = {}

    @staticmethod
    def _handler(kind: str, reconciler: NodeReconciler | FormReconciler | HubReconciler) -> Handler:
        async def handle(key: str) -> ReconcileResult:
            namespace, name = split_key(key)
            with bind_reconcile_context(kind, key):
                return await reconciler.reconcile(namespace, name)

        return handle

    @property
    def synced(self) -> bool:
        """True once every kind completed its initial list."""
        return len(self._synced) == len(self.queues)

    def enqueue(self, kind: str, obj: dict[str, Any]) -> None:
        for target, keys in related_keys(kind, obj).items():
            for key in keys:
                self.queues[target].add(key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for queue in self.queues.values():
            await queue.start()
        for kind in self.queues:
            self._tasks.append(asyncio.create_task(self._watch(kind), name=f"watch-{PLURALS[kind]}"))
        self._tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))
        _logger.info("manager_started", namespace=self._config.watch_namespace or "*")

    async def stop(self) -> None:
        self._stopping = True
        for watcher in self._watchers.values():
            watcher.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=5)
        self._tasks.clear()
        for queue in self.queues.values():
            await queue.stop()
        _logger.info("manager_stopped")

    # ------------------------------------------------------------------
    # Watch loops
    # ------------------------------------------------------------------

    def _list_call(self, api: k8s_client.CustomObjectsApi, kind: str) -> tuple[Any, tuple[Any, ...]]:
        plural = PLURALS[kind]
        if self._config.watch_namespace:
            return api.list_namespaced_custom_object, (API_GROUP, API_VERSION, self._config.watch_namespace, plural)
        return api.list_cluster_custom_object, (API_GROUP, API_VERSION, plural)

    async def _relist(self, kind: str, api: k8s_client.CustomObjectsApi) -> str:
        func, args = self._list_call(api, kind)
        listing = await func(*args)
        items = listing.get("items") or []
        for obj in items:
            obj.setdefault("apiVersion", GROUP_VERSION)
            obj.setdefault("kind", kind)
            self.enqueue(kind, obj)
        self._synced.add(kind)
        _logger.debug("kind_listed", kind=kind, count=len(items))
        return str((listing.get("metadata") or {}).get("resourceVersion", ""))

    async def _watch(self, kind: str) -> None:
        api = k8s_client.CustomObjectsApi(self._api_client)
        resource_version: str | None = None
        backoff = 1.0
        while not self._stopping:
            watcher = watch.Watch()
            self._watchers[kind] = watcher
            try:
                if resource_version is None:
                    resource_version = await self._relist(kind, api)
                func, args = self._list_call(api, kind)
                async for event in watcher.stream(
                    func, *args, resource_version=resource_version, timeout_seconds=_WATCH_TIMEOUT_SECONDS
                ):
                    event_type = str(event.get("type", ""))
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue
                    if event_type == "ERROR":
                        if obj.get("code") == 410:
                            _logger.warning("watch_expired", kind=kind)
                            resource_version = None
                            break
                        _logger.warning("watch_error_event", kind=kind, message=obj.get("message", ""))
                        continue
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion", resource_version)
                    _logger.debug("watch_event", kind=kind, type=event_type, key=object_key(obj))
                    self.enqueue(kind, obj)
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except ApiException as exc:
                if exc.status == 410:
                    _logger.warning("watch_expired", kind=kind)
                    resource_version = None
                    continue
                _logger.warning("watch_failed", kind=kind, status=exc.status, reason=exc.reason)
                backoff = await self._backoff(backoff)
            except (OSError, TimeoutError) as exc:
                _logger.warning("watch_failed", kind=kind, error=str(exc))
                backoff = await self._backoff(backoff)
            except Exception:
                _logger.exception("watch_crashed", kind=kind)
                backoff = await self._backoff(backoff)
            finally:
                watcher.stop()
                self._watchers.pop(kind, None)

    @staticmethod
    async def _backoff(seconds: float) -> float:
        await asyncio.sleep(seconds * (0.5 + random.random()))  # noqa: S311
        return min(seconds * 2, _MAX_WATCH_BACKOFF_SECONDS)

    async def _resync_loop(self) -> None:
        namespace = self._config.watch_namespace
        while not self._stopping:
            await asyncio.sleep(self._config.resync_seconds)
            for kind in self.queues:
                try:
                    objs = await self._client.list(GROUP_VERSION, kind, namespace)
                except TransientAPIError as exc:
                    _logger.warning("resync_failed", kind=kind, error=str(exc))
                    continue
                for obj in objs:
                    self.queues[kind].add(object_key(obj))
