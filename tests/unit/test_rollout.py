"""Unit tests for rollout statistics, phases and the admission gate."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from hypothesis import given
from hypothesis import strategies as st

from lynq.controller.rollout import admit, compute_stats, next_rollout_state, rollout_phase
from lynq.models.form import Form
from lynq.models.node import NodeInstance
from lynq.models.rollout import RolloutPhase, RolloutState, RolloutStats
from lynq.models.times import format_time

_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _form(generation: int = 2, max_skew: int = 2, deadline: int = 600) -> Form:
    return Form.from_object(
        {
            "metadata": {"name": "web", "namespace": "default", "generation": generation},
            "spec": {"hubId": "tenants", "rollout": {"maxSkew": max_skew, "progressDeadlineSeconds": deadline}},
        }
    )


def _node(name: str, template_generation: int, ready: bool, updated_at: datetime | None = None) -> NodeInstance:
    annotations: dict[str, Any] = {"lynq.sh/template-generation": str(template_generation)}
    if updated_at is not None:
        annotations["lynq.sh/template-updated-at"] = format_time(updated_at)
    return NodeInstance.from_object(
        {
            "metadata": {"name": name, "namespace": "default", "generation": 1, "annotations": annotations},
            "spec": {"templateRef": "web", "uid": name},
            "status": {
                "observedGeneration": 1,
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            },
        }
    )


class TestComputeStats:
    def test_counts(self) -> None:
        """Nodes are counted per generation and readiness."""
        nodes = [
            _node("a", 2, ready=True),
            _node("b", 2, ready=False, updated_at=_NOW),
            _node("c", 1, ready=True),
            _node("d", 1, ready=False),
        ]
        stats = compute_stats(_form(), nodes, _NOW)
        assert stats == RolloutStats(
            total_nodes=4,
            ready_nodes=2,
            updated_nodes=2,
            updating_nodes=1,
            ready_updated_nodes=1,
            stalled_nodes=0,
        )

    def test_stalled_after_deadline(self) -> None:
        """Nodes updating past the deadline are stalled."""
        nodes = [_node("b", 2, ready=False, updated_at=_NOW - timedelta(seconds=601))]
        assert compute_stats(_form(), nodes, _NOW).stalled_nodes == 1

    def test_missing_updated_at_never_stalls(self) -> None:
        """Without an update time a node never stalls."""
        nodes = [_node("b", 2, ready=False)]
        assert compute_stats(_form(), nodes, _NOW + timedelta(days=1)).stalled_nodes == 0


class TestPhase:
    def test_idle_without_updated_nodes(self) -> None:
        """No updated nodes means Idle."""
        assert rollout_phase(RolloutStats()) == RolloutPhase.IDLE
        assert rollout_phase(RolloutStats(total_nodes=3)) == RolloutPhase.IDLE

    def test_failed_wins_over_progress(self) -> None:
        """A stalled node fails the rollout even mid-progress."""
        stats = RolloutStats(total_nodes=3, updated_nodes=2, updating_nodes=1, stalled_nodes=1)
        assert rollout_phase(stats) == RolloutPhase.FAILED

    def test_complete(self) -> None:
        """All nodes updated and ready means Complete."""
        stats = RolloutStats(total_nodes=2, ready_nodes=2, updated_nodes=2, ready_updated_nodes=2)
        assert rollout_phase(stats) == RolloutPhase.COMPLETE

    def test_in_progress(self) -> None:
        """Partially updated nodes mean InProgress."""
        stats = RolloutStats(total_nodes=2, updated_nodes=1, updating_nodes=1)
        assert rollout_phase(stats) == RolloutPhase.IN_PROGRESS


class TestNextState:
    def test_start_time_kept_for_same_generation(self) -> None:
        """startTime is kept while the target generation holds."""
        stats = RolloutStats(total_nodes=2, updated_nodes=1, updating_nodes=1)
        first = next_rollout_state(None, stats, _form(), _NOW)
        later = next_rollout_state(first, stats, _form(), _NOW + timedelta(minutes=5))
        assert later.start_time == _NOW
        assert later.completion_time is None

    def test_new_generation_resets_times(self) -> None:
        """A new target generation restarts the clock."""
        stats = RolloutStats(total_nodes=2, updated_nodes=1, updating_nodes=1)
        previous = RolloutState(
            phase=RolloutPhase.COMPLETE, target_generation=1, start_time=_NOW, completion_time=_NOW
        )
        state = next_rollout_state(previous, stats, _form(generation=2), _NOW + timedelta(hours=1))
        assert state.start_time == _NOW + timedelta(hours=1)
        assert state.completion_time is None
        assert state.target_generation == 2

    def test_completion_time_set_once(self) -> None:
        """completionTime is stamped once."""
        stats = RolloutStats(total_nodes=1, ready_nodes=1, updated_nodes=1, ready_updated_nodes=1)
        done = next_rollout_state(None, stats, _form(), _NOW)
        again = next_rollout_state(done, stats, _form(), _NOW + timedelta(minutes=1))
        assert again.completion_time == _NOW
        assert again.message == "All 1 nodes updated and ready"

    def test_idle_clears_times(self) -> None:
        """Going Idle clears the timestamps."""
        state = next_rollout_state(None, RolloutStats(), _form(), _NOW)
        assert state.phase == RolloutPhase.IDLE
        assert state.start_time is None
        assert state.message == "No nodes using this template"


class TestAdmit:
    def test_zero_skew_admits_everyone(self) -> None:
        """maxSkew 0 admits every node."""
        assert admit(0, 10, ["b", "a"]) == ["a", "b"]

    def test_capacity_is_skew_minus_updating(self) -> None:
        """Capacity is maxSkew minus nodes still updating."""
        assert admit(3, 1, ["d", "c", "b", "a"]) == ["a", "b"]

    def test_full_gate_admits_nobody(self) -> None:
        """A full gate admits no new nodes."""
        assert admit(2, 2, ["a"]) == []
        assert admit(2, 5, ["a"]) == []

    @given(
        max_skew=st.integers(min_value=1, max_value=20),
        updating=st.integers(min_value=0, max_value=30),
        candidates=st.sets(st.text(min_size=1, max_size=5), max_size=30),
    )
    def test_never_exceeds_skew(self, max_skew: int, updating: int, candidates: set[str]) -> None:
        """Admissions never exceed maxSkew."""
        admitted = admit(max_skew, updating, candidates)
        assert len(admitted) <= max(0, max_skew - updating)
        assert set(admitted) <= candidates
        assert admitted == sorted(admitted)
