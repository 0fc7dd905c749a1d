"""Kubernetes Event recording for Lynq objects."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any

from lynq.cluster.client import KubeClient
from lynq.errors import TransientAPIError
from lynq.models.times import format_time, utc_now
from lynq.observability.logging import get_logger

_logger = get_logger("events")

COMPONENT = "lynq-controller"


class EventType(StrEnum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventRecorder:
    """Writes ``v1/Event`` objects about an involved Lynq object.

    Recording is best effort: a failed write is logged and dropped.
    Callers decide when an event is due; reconcilers emit on transitions only.
    """

    def __init__(self, client: KubeClient, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._client = client
        self._now = now_fn

    async def record(self, involved: dict[str, Any], event_type: EventType, reason: str, message: str) -> None:
        metadata = involved.get("metadata") or {}
        name = str(metadata.get("name", ""))
        namespace = str(metadata.get("namespace", "") or "default")
        now = format_time(self._now())
        event = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {"name": f"{name}.{uuid.uuid4().hex[:16]}", "namespace": namespace},
            "involvedObject": {
                "apiVersion": involved.get("apiVersion", ""),
                "kind": involved.get("kind", ""),
                "name": name,
                "namespace": namespace,
                "uid": metadata.get("uid", ""),
                "resourceVersion": metadata.get("resourceVersion", ""),
            },
            "type": str(event_type),
            "reason": reason,
            "message": message,
            "source": {"component": COMPONENT},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        _logger.info(
            "event_recorded",
            kind=involved.get("kind", ""),
            name=name,
            namespace=namespace,
            type=str(event_type),
            reason=reason,
        )
        try:
            await self._client.create(event)
        except TransientAPIError as exc:
            _logger.warning("event_record_failed", reason=reason, name=name, error=str(exc))
