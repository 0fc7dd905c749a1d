"""Return value shared by the reconcilers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileResult:
    """What the work queue should do with a key after a successful pass.

    ``requeue_after`` of None means "wait for the next watch event or resync".
    """

    requeue_after: float | None = None

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls()

    @classmethod
    def after(cls, seconds: float) -> ReconcileResult:
        return cls(requeue_after=max(0.0, seconds))
