"""Reconcilers, rollout gate, work queues and the controller manager."""

from lynq.controller.form import FormReconciler
from lynq.controller.hub import DataSource, HubReconciler, HubSyncer, register_data_source
from lynq.controller.manager import ControllerManager
from lynq.controller.node import NodeReconciler
from lynq.controller.queue import WorkQueue
from lynq.controller.result import ReconcileResult

__all__ = [
    "ControllerManager",
    "DataSource",
    "FormReconciler",
    "HubReconciler",
    "HubSyncer",
    "NodeReconciler",
    "ReconcileResult",
    "WorkQueue",
    "register_data_source",
]
