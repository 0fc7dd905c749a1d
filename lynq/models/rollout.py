"""Rollout configuration and derived rollout state for a LynqForm."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from lynq.models.times import format_time, parse_time

DEFAULT_PROGRESS_DEADLINE_SECONDS = 600


class RolloutPhase(StrEnum):
    """Phase of a template rollout across the nodes of one form."""

    IDLE = "Idle"
    IN_PROGRESS = "InProgress"
    FAILED = "Failed"
    COMPLETE = "Complete"


# Gauge encoding used by lynqform_rollout_phase
PHASE_METRIC_VALUES = {
    RolloutPhase.IDLE: 0,
    RolloutPhase.IN_PROGRESS: 1,
    RolloutPhase.FAILED: 2,
    RolloutPhase.COMPLETE: 3,
}


@dataclass(frozen=True)
class RolloutConfig:
    """``spec.rollout`` of a LynqForm.  ``max_skew == 0`` disables throttling."""

    max_skew: int = 0
    progress_deadline_seconds: int = DEFAULT_PROGRESS_DEADLINE_SECONDS

    @property
    def enabled(self) -> bool:
        return self.max_skew > 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RolloutConfig | None:
        if not data:
            return None
        return cls(
            max_skew=int(data.get("maxSkew", 0) or 0),
            progress_deadline_seconds=int(
                data.get("progressDeadlineSeconds", DEFAULT_PROGRESS_DEADLINE_SECONDS)
                or DEFAULT_PROGRESS_DEADLINE_SECONDS
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"maxSkew": self.max_skew, "progressDeadlineSeconds": self.progress_deadline_seconds}


@dataclass(frozen=True)
class RolloutStats:
    """Aggregate node counts for one form, recomputed from a live node list."""

    total_nodes: int = 0
    ready_nodes: int = 0
    updated_nodes: int = 0
    updating_nodes: int = 0
    ready_updated_nodes: int = 0
    stalled_nodes: int = 0  # updating for longer than progressDeadlineSeconds


@dataclass
class RolloutState:
    """``status.rollout`` of a LynqForm.

    A derived view: every field is recomputed from :class:`RolloutStats` on each
    form reconcile; only ``start_time`` / ``completion_time`` carry over.
    """

    phase: RolloutPhase = RolloutPhase.IDLE
    target_generation: int = 0
    total_nodes: int = 0
    updated_nodes: int = 0
    updating_nodes: int = 0
    ready_updated_nodes: int = 0
    start_time: datetime | None = None
    completion_time: datetime | None = None
    message: str = ""

    @property
    def progress(self) -> float:
        """Percentage of nodes that are updated and ready."""
        if self.total_nodes == 0:
            return 0.0
        return self.ready_updated_nodes / self.total_nodes * 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RolloutState | None:
        if not data:
            return None
        try:
            phase = RolloutPhase(data.get("phase") or RolloutPhase.IDLE)
        except ValueError:
            phase = RolloutPhase.IDLE
        return cls(
            phase=phase,
            target_generation=int(data.get("targetGeneration", 0) or 0),
            total_nodes=int(data.get("totalNodes", 0) or 0),
            updated_nodes=int(data.get("updatedNodes", 0) or 0),
            updating_nodes=int(data.get("updatingNodes", 0) or 0),
            ready_updated_nodes=int(data.get("readyUpdatedNodes", 0) or 0),
            start_time=parse_time(data.get("startTime")),
            completion_time=parse_time(data.get("completionTime")),
            message=str(data.get("message", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "phase": str(self.phase),
            "targetGeneration": self.target_generation,
            "totalNodes": self.total_nodes,
            "updatedNodes": self.updated_nodes,
            "updatingNodes": self.updating_nodes,
            "readyUpdatedNodes": self.ready_updated_nodes,
            "message": self.message,
        }
        if self.start_time is not None:
            out["startTime"] = format_time(self.start_time)
        if self.completion_time is not None:
            out["completionTime"] = format_time(self.completion_time)
        return out
