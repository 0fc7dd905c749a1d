"""Cluster API access and event recording."""

from lynq.cluster.client import KubeClient, KubernetesClient
from lynq.cluster.events import EventRecorder, EventType

__all__ = ["EventRecorder", "EventType", "KubeClient", "KubernetesClient"]
