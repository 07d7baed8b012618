"""Pipeline Coordinator — the central sequencer for a deployment run.

Wires the resolver, publisher, session manager and reconciler together
behind a :class:`PipelineStateMachine`:

    RESOLVING -> PUBLISHING -> CONNECTING -> RECONCILING -> SUCCEEDED

Each stage runs only after the previous one succeeded.  The first error
moves the machine to ``FAILED`` (or ``CANCELLED``) and no further stage
runs.  The coordinator performs no remediation and no retries of its
own; its sole output is a :class:`PipelineResult`.  Re-running the whole
pipeline is the caller's decision.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import TypeVar

from keelhaul.config import KeelhaulSettings
from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import (
    Cancelled,
    DeploymentDegraded,
    KeelhaulError,
    PipelineStageError,
)
from keelhaul.core.publisher import RegistryPublisher
from keelhaul.core.reconciler import DeploymentReconciler
from keelhaul.core.resolver import resolve_artifact
from keelhaul.core.run_ledger import RunLedger
from keelhaul.core.session import SshSessionManager
from keelhaul.core.stage_machine import PipelineStateMachine
from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.config import PipelineRequest
from keelhaul.models.credentials import (
    RegistryCredentials,
    SshIdentity,
    credential_scope,
)
from keelhaul.models.ledger import LedgerEntry
from keelhaul.models.results import (
    PipelineOutcome,
    PipelineResult,
    PublishResult,
    ReconcileResult,
    StageRecord,
)
from keelhaul.models.stages import PipelineStage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PipelineCoordinator:
    """Runs one deployment pipeline per :meth:`run` call.

    Parameters
    ----------
    publisher:
        Registry publisher.  Defaults to a :class:`RegistryPublisher`.
    session_manager:
        Opens the remote session.  Defaults to :class:`SshSessionManager`.
    reconciler:
        Remote replacement logic.  Defaults to :class:`DeploymentReconciler`.
    ledger:
        Optional audit ledger; every stage record is appended to it.
    """

    def __init__(
        self,
        publisher: RegistryPublisher | None = None,
        session_manager: SshSessionManager | None = None,
        reconciler: DeploymentReconciler | None = None,
        *,
        ledger: RunLedger | None = None,
    ) -> None:
        self.publisher = publisher or RegistryPublisher()
        self.session_manager = session_manager or SshSessionManager()
        self.reconciler = reconciler or DeploymentReconciler()
        self.ledger = ledger

    @classmethod
    def from_settings(
        cls, settings: KeelhaulSettings, *, with_ledger: bool = True
    ) -> "PipelineCoordinator":
        """Build a coordinator whose components follow *settings*."""
        return cls(
            publisher=RegistryPublisher(
                retry_policy=settings.retry_policy(),
                docker_binary=settings.docker_binary,
                command_timeout=settings.command_timeout_seconds,
            ),
            session_manager=SshSessionManager(
                ssh_binary=settings.ssh_binary,
                connect_timeout=settings.connect_timeout_seconds,
                command_timeout=settings.command_timeout_seconds,
                strict_host_key_checking=settings.strict_host_key_checking,
                known_hosts_file=settings.known_hosts_file,
            ),
            reconciler=DeploymentReconciler(docker_binary=settings.remote_docker_binary),
            ledger=RunLedger(settings.ledger_path) if with_ledger else None,
        )

    @staticmethod
    def new_run_id() -> str:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return f"kh-{ts}-{uuid.uuid4().hex[:6]}"

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        request: PipelineRequest,
        *,
        registry_credentials: RegistryCredentials,
        ssh_identity: SshIdentity,
        remote_registry_credentials: RegistryCredentials | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> PipelineResult:
        """Execute the pipeline for *request* and return its terminal result.

        Credentials are used for this run only and are invalidated when it
        ends, whatever the outcome.  The target host pulls with
        *remote_registry_credentials* when given, otherwise with a separate
        login using *registry_credentials*.
        """
        run = _Run(
            run_id=run_id or self.new_run_id(),
            request=request,
            token=cancel_token or CancellationToken(),
            ledger=self.ledger,
        )
        machine = PipelineStateMachine(run.run_id)
        pull_credentials = remote_registry_credentials or registry_credentials

        logger.info(
            "Run %s: deploying build %s of %s to %s",
            run.run_id, request.build_id, request.local_image,
            request.target.host_address,
        )
        with credential_scope(registry_credentials, ssh_identity, remote_registry_credentials):
            try:
                run.artifact = run.stage(
                    PipelineStage.RESOLVING,
                    lambda: resolve_artifact(request.build_id, request.repository),
                )

                machine.transition(PipelineStage.PUBLISHING)
                run.publish = run.stage(
                    PipelineStage.PUBLISHING,
                    lambda: self.publisher.publish(
                        request.local_image,
                        run.artifact,
                        registry_credentials,
                        cancel_token=run.token,
                    ),
                )

                machine.transition(PipelineStage.CONNECTING)
                with ExitStack() as stack:
                    session = run.stage(
                        PipelineStage.CONNECTING,
                        lambda: stack.enter_context(
                            self.session_manager.session(
                                request.target, ssh_identity, cancel_token=run.token
                            )
                        ),
                    )

                    machine.transition(PipelineStage.RECONCILING)
                    run.reconcile = run.stage(
                        PipelineStage.RECONCILING,
                        lambda: self.reconciler.reconcile(
                            session, run.artifact, request.target, pull_credentials
                        ),
                    )

                machine.transition(PipelineStage.SUCCEEDED)
            except KeelhaulError as exc:
                return self._failed(run, machine, exc)

        result = run.result(
            stage_reached=PipelineStage.SUCCEEDED,
            success=True,
            outcome=PipelineOutcome.SUCCEEDED,
        )
        run.record_terminal(result)
        logger.info(
            "Run %s succeeded: %s serving %s on %s",
            run.run_id, request.target.service_name,
            run.artifact.build_ref if run.artifact else "?",
            request.target.port_mapping,
        )
        return result

    def _failed(
        self,
        run: "_Run",
        machine: PipelineStateMachine,
        exc: KeelhaulError,
    ) -> PipelineResult:
        stage = machine.current
        wrapped = PipelineStageError(stage.value, exc)
        target = run.request.target

        if isinstance(exc, Cancelled):
            outcome = PipelineOutcome.CANCELLED
            detail = (
                f"{wrapped}. Target state is unspecified: verify "
                f"{target.service_name} on {target.host_address} manually."
            )
            machine.transition(PipelineStage.CANCELLED, reason=str(exc))
            logger.warning("Run %s cancelled during %s", run.run_id, stage.value)
        else:
            outcome = (
                PipelineOutcome.DEGRADED
                if isinstance(exc, DeploymentDegraded)
                else PipelineOutcome.FAILED
            )
            detail = str(wrapped)
            machine.transition(PipelineStage.FAILED, reason=str(exc))
            if outcome == PipelineOutcome.DEGRADED:
                logger.critical(
                    "Run %s DEGRADED: no instance of %s is running on %s. %s",
                    run.run_id, target.service_name, target.host_address, exc,
                )
            else:
                logger.error("Run %s failed: %s", run.run_id, detail)

        result = run.result(
            stage_reached=stage,
            success=False,
            outcome=outcome,
            error_type=type(exc).__name__,
            error_detail=detail,
            cause=exc,
        )
        run.record_terminal(result)
        return result


class _Run:
    """Mutable bookkeeping for one in-flight run."""

    def __init__(
        self,
        *,
        run_id: str,
        request: PipelineRequest,
        token: CancellationToken,
        ledger: RunLedger | None,
    ) -> None:
        self.run_id = run_id
        self.request = request
        self.token = token
        self.ledger = ledger
        self.stage_log: list[StageRecord] = []
        self.artifact: ArtifactReference | None = None
        self.publish: PublishResult | None = None
        self.reconcile: ReconcileResult | None = None

    def stage(self, stage: PipelineStage, fn: Callable[[], T]) -> T:
        """Run one stage body, recording start, end and success."""
        started = datetime.now(timezone.utc)
        logger.info("Run %s: %s", self.run_id, stage.value)
        try:
            self.token.raise_if_cancelled()
            value = fn()
        except BaseException as exc:
            self._record(stage, started, success=False, error=exc)
            raise
        self._record(stage, started, success=True)
        return value

    def _record(
        self,
        stage: PipelineStage,
        started: datetime,
        *,
        success: bool,
        error: BaseException | None = None,
    ) -> None:
        record = StageRecord(
            stage=stage,
            started_at=started,
            finished_at=datetime.now(timezone.utc),
            success=success,
            error_type=type(error).__name__ if error is not None else None,
            detail=str(error) if error is not None else "",
        )
        self.stage_log.append(record)
        self._append_ledger(
            stage=stage.value,
            started=record.started_at,
            finished=record.finished_at,
            success=success,
            error_type=record.error_type or "",
            detail=record.detail,
        )

    def record_terminal(self, result: PipelineResult) -> None:
        started = self.stage_log[0].started_at if self.stage_log else datetime.now(timezone.utc)
        self._append_ledger(
            stage=result.outcome.value,
            started=started,
            finished=datetime.now(timezone.utc),
            success=result.success,
            error_type=result.error_type or "",
            detail=result.error_detail or "",
        )

    def _append_ledger(
        self,
        *,
        stage: str,
        started: datetime,
        finished: datetime,
        success: bool,
        error_type: str,
        detail: str,
    ) -> None:
        if self.ledger is None:
            return
        self.ledger.append(
            LedgerEntry(
                run_id=self.run_id,
                stage=stage,
                started_at=started,
                finished_at=finished,
                success=success,
                error_type=error_type,
                detail=detail,
                reference=self.artifact.floating_ref if self.artifact else "",
                build_id=self.request.build_id,
                service_name=self.request.target.service_name,
            )
        )

    def result(self, **fields) -> PipelineResult:
        return PipelineResult(
            run_id=self.run_id,
            artifact=self.artifact,
            publish=self.publish,
            reconcile=self.reconcile,
            stage_log=list(self.stage_log),
            **fields,
        )
