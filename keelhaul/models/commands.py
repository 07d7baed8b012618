"""Typed remote commands and their outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from keelhaul.models.stages import ReconcilePhase


class FailurePolicy(str, Enum):
    FATAL = "fatal"
    TOLERATE_ABSENCE = "tolerate-absence"


class ReconcileStep(str, Enum):
    """The remote steps, in execution order."""

    LOGIN = "login"
    PULL = "pull"
    STOP = "stop"
    REMOVE = "remove"
    START = "start"
    VERIFY = "verify"

    @property
    def phase(self) -> ReconcilePhase:
        """The phase the target is in once this step has succeeded."""
        return _STEP_PHASES[self]


_STEP_PHASES: dict[ReconcileStep, ReconcilePhase] = {
    ReconcileStep.LOGIN: ReconcilePhase.AUTHENTICATED,
    ReconcileStep.PULL: ReconcilePhase.PULLED,
    ReconcileStep.STOP: ReconcilePhase.STOPPED,
    ReconcileStep.REMOVE: ReconcilePhase.REMOVED,
    ReconcileStep.START: ReconcilePhase.STARTED,
    ReconcileStep.VERIFY: ReconcilePhase.CONVERGED,
}


class DeploymentCommand(BaseModel):
    """One ordered remote step.  Built per run, executed once, never retried."""

    model_config = ConfigDict(frozen=True)

    step: ReconcileStep
    description: str
    shell_invocation: str
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    stdin: SecretStr | None = None  # secrets go to stdin, never the command line


class CommandOutcome(BaseModel):
    """Exit status and captured output of one executed command."""

    model_config = ConfigDict(frozen=True)

    step: ReconcileStep | None = None
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    absent: bool = False  # non-zero exit tolerated as "nothing to act on"
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 or self.absent
