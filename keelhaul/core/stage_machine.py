"""Forward-only state machines for the pipeline and the remote reconcile.

Both machines enforce a transition table (``VALID_TRANSITIONS`` and
``RECONCILE_TRANSITIONS``) and keep an in-memory transition history for
the run.  Neither ever moves backwards; terminal states have no outgoing
transitions.
"""

from __future__ import annotations

import logging

from keelhaul.models.stages import (
    RECONCILE_TRANSITIONS,
    TERMINAL_STAGES,
    VALID_TRANSITIONS,
    PipelineStage,
    ReconcilePhase,
    StageTransition,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class PipelineStateMachine:
    """``RESOLVING -> PUBLISHING -> CONNECTING -> RECONCILING -> SUCCEEDED``.

    ``FAILED`` and ``CANCELLED`` are absorbing and reachable from every
    non-terminal state.  :attr:`last_working_stage` remembers the stage a
    run was in when it left the happy path, so results can report where a
    failure happened.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._current = PipelineStage.RESOLVING
        self._last_working = PipelineStage.RESOLVING
        self.history: list[StageTransition] = []

    @property
    def current(self) -> PipelineStage:
        return self._current

    @property
    def last_working_stage(self) -> PipelineStage:
        return self._last_working

    @property
    def is_terminal(self) -> bool:
        return self._current in TERMINAL_STAGES

    def transition(self, target: PipelineStage, *, reason: str | None = None) -> StageTransition:
        allowed = VALID_TRANSITIONS.get(self._current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition run {self.run_id} from {self._current.value} "
                f"to {target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )
        record = StageTransition(from_stage=self._current, to_stage=target, reason=reason)
        self.history.append(record)
        logger.debug("run %s: %s -> %s", self.run_id, self._current.value, target.value)
        if target not in (PipelineStage.FAILED, PipelineStage.CANCELLED):
            self._last_working = target
        self._current = target
        return record


class ReconcileStateMachine:
    """Tracks what the target host has been through during one reconcile."""

    def __init__(self) -> None:
        self._phase = ReconcilePhase.PENDING
        self.history: list[ReconcilePhase] = [ReconcilePhase.PENDING]

    @property
    def phase(self) -> ReconcilePhase:
        return self._phase

    @property
    def instance_touched(self) -> bool:
        """True once the stop step has executed (the old instance may be gone)."""
        return ReconcilePhase.STOPPED in self.history

    def advance(self, target: ReconcilePhase) -> None:
        allowed = RECONCILE_TRANSITIONS.get(self._phase, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move reconcile from {self._phase.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self._phase = target
        self.history.append(target)

    def fail(self) -> ReconcilePhase:
        """Move to the right absorbing failure phase and return it."""
        terminal = ReconcilePhase.DEGRADED if self.instance_touched else ReconcilePhase.FAILED
        self.advance(terminal)
        return terminal
