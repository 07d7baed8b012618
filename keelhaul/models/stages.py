"""Pipeline and reconcile state models — strictly forward transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PipelineStage(str, Enum):
    """Coordinator states.  FAILED and CANCELLED are absorbing."""

    RESOLVING = "resolving"
    PUBLISHING = "publishing"
    CONNECTING = "connecting"
    RECONCILING = "reconciling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward-only; every non-terminal state may fall into FAILED or CANCELLED.
VALID_TRANSITIONS: dict[PipelineStage, set[PipelineStage]] = {
    PipelineStage.RESOLVING: {
        PipelineStage.PUBLISHING, PipelineStage.FAILED, PipelineStage.CANCELLED,
    },
    PipelineStage.PUBLISHING: {
        PipelineStage.CONNECTING, PipelineStage.FAILED, PipelineStage.CANCELLED,
    },
    PipelineStage.CONNECTING: {
        PipelineStage.RECONCILING, PipelineStage.FAILED, PipelineStage.CANCELLED,
    },
    PipelineStage.RECONCILING: {
        PipelineStage.SUCCEEDED, PipelineStage.FAILED, PipelineStage.CANCELLED,
    },
    PipelineStage.SUCCEEDED: set(),
    PipelineStage.FAILED: set(),
    PipelineStage.CANCELLED: set(),
}

TERMINAL_STAGES: frozenset[PipelineStage] = frozenset(
    s for s, targets in VALID_TRANSITIONS.items() if not targets
)

# The working stages, in execution order.
STAGE_ORDER: list[PipelineStage] = [
    PipelineStage.RESOLVING,
    PipelineStage.PUBLISHING,
    PipelineStage.CONNECTING,
    PipelineStage.RECONCILING,
]


class StageTransition(BaseModel):
    """Records a single coordinator transition."""

    model_config = ConfigDict(frozen=True)

    from_stage: PipelineStage
    to_stage: PipelineStage
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str | None = None  # populated when entering FAILED or CANCELLED


class ReconcilePhase(str, Enum):
    """What the target host has observably been through during a reconcile.

    The stop/remove/start sequence is not atomic.  Failures before STOPPED
    leave the old instance untouched (FAILED); failures from STOPPED on
    leave the service down (DEGRADED).
    """

    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    PULLED = "pulled"
    STOPPED = "stopped"
    REMOVED = "removed"
    STARTED = "started"
    CONVERGED = "converged"
    FAILED = "failed"
    DEGRADED = "degraded"


RECONCILE_TRANSITIONS: dict[ReconcilePhase, set[ReconcilePhase]] = {
    ReconcilePhase.PENDING: {ReconcilePhase.AUTHENTICATED, ReconcilePhase.FAILED},
    ReconcilePhase.AUTHENTICATED: {ReconcilePhase.PULLED, ReconcilePhase.FAILED},
    ReconcilePhase.PULLED: {ReconcilePhase.STOPPED, ReconcilePhase.FAILED},
    ReconcilePhase.STOPPED: {ReconcilePhase.REMOVED, ReconcilePhase.DEGRADED},
    ReconcilePhase.REMOVED: {ReconcilePhase.STARTED, ReconcilePhase.DEGRADED},
    ReconcilePhase.STARTED: {ReconcilePhase.CONVERGED, ReconcilePhase.DEGRADED},
    ReconcilePhase.CONVERGED: set(),
    ReconcilePhase.FAILED: set(),
    ReconcilePhase.DEGRADED: set(),
}
