"""Core data structures for Lynq."""

from lynq.models.config import LynqConfig
from lynq.models.form import (
    ConflictPolicy,
    CreationPolicy,
    DeletionPolicy,
    Form,
    PatchStrategy,
    ResourceSpec,
)
from lynq.models.hub import Hub, NodeRow
from lynq.models.node import (
    AppliedResource,
    Condition,
    ConditionStatus,
    NodeInstance,
    NodeStatus,
)
from lynq.models.rollout import RolloutConfig, RolloutPhase, RolloutState, RolloutStats

__all__ = [
    "AppliedResource",
    "Condition",
    "ConditionStatus",
    "ConflictPolicy",
    "CreationPolicy",
    "DeletionPolicy",
    "Form",
    "Hub",
    "LynqConfig",
    "NodeInstance",
    "NodeRow",
    "NodeStatus",
    "PatchStrategy",
    "ResourceSpec",
    "RolloutConfig",
    "RolloutPhase",
    "RolloutState",
    "RolloutStats",
]
