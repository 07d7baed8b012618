"""Stage results and the terminal PipelineResult."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from keelhaul.core.errors import PipelineStageError
from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.commands import CommandOutcome
from keelhaul.models.stages import PipelineStage, ReconcilePhase


class PublishResult(BaseModel):
    """What the publisher pushed, and how many retries it took."""

    model_config = ConfigDict(frozen=True)

    reference: ArtifactReference
    pushed_refs: list[str]
    digest: str | None = None  # "sha256:..." reported by the registry
    attempts: int = 1  # network attempts: logins and pushes
    retry_count: int = 0


class ReconcileResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_name: str
    reference: ArtifactReference
    final_phase: ReconcilePhase
    outcomes: list[CommandOutcome] = []
    previous_instance_found: bool = False
    container_id: str | None = None


class StageRecord(BaseModel):
    """Audit record for one stage: name, start, end, success."""

    model_config = ConfigDict(frozen=True)

    stage: PipelineStage
    started_at: datetime
    finished_at: datetime
    success: bool
    error_type: str | None = None
    detail: str = ""

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class PipelineOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"  # nothing changed on the target; safe to re-run
    DEGRADED = "degraded"  # service down; urgent manual intervention
    CANCELLED = "cancelled"  # target state unspecified; verify manually


class PipelineResult(BaseModel):
    """Terminal value of one pipeline run.  Immutable once produced."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    run_id: str
    stage_reached: PipelineStage
    success: bool
    outcome: PipelineOutcome
    error_type: str | None = None
    error_detail: str | None = None
    artifact: ArtifactReference | None = None
    publish: PublishResult | None = None
    reconcile: ReconcileResult | None = None
    stage_log: list[StageRecord] = []
    cause: BaseException | None = Field(default=None, exclude=True, repr=False)

    @property
    def requires_intervention(self) -> bool:
        return self.outcome in (PipelineOutcome.DEGRADED, PipelineOutcome.CANCELLED)

    @property
    def safe_to_rerun(self) -> bool:
        return self.outcome == PipelineOutcome.FAILED

    def raise_for_status(self) -> None:
        """Raise ``PipelineStageError`` unless the run succeeded."""
        if self.success:
            return
        cause = self.cause or RuntimeError(self.error_detail or "pipeline failed")
        raise PipelineStageError(self.stage_reached.value, cause)
