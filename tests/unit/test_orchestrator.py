"""Tests for PipelineCoordinator sequencing with stub components."""

from __future__ import annotations

from contextlib import contextmanager

import pytest

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import (
    AuthenticationError,
    ConfigurationError,
    DeploymentDegraded,
    PipelineStageError,
    PullFailed,
    UnreachableHost,
)
from keelhaul.core.orchestrator import PipelineCoordinator
from keelhaul.core.run_ledger import RunLedger
from keelhaul.models.config import RepositoryConfig
from keelhaul.models.results import PipelineOutcome, PublishResult, ReconcileResult
from keelhaul.models.stages import PipelineStage, ReconcilePhase


class StubPublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0

    def publish(self, local_image, reference, credentials, *, cancel_token=None):
        self.calls += 1
        credentials.reveal()
        if self.error is not None:
            raise self.error
        return PublishResult(
            reference=reference,
            pushed_refs=[reference.floating_ref, reference.build_ref],
        )


class StubSessionManager:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.opened = 0
        self.closed = 0

    @contextmanager
    def session(self, target, identity, *, cancel_token=None):
        if self.error is not None:
            raise self.error
        self.opened += 1
        try:
            yield object()
        finally:
            self.closed += 1


class StubReconciler:
    def __init__(self, error: Exception | None = None, hook=None) -> None:
        self.error = error
        self.hook = hook
        self.calls = 0
        self.credentials = None

    def reconcile(self, session, reference, target, credentials=None):
        self.calls += 1
        self.credentials = credentials
        if self.hook is not None:
            self.hook()
        if self.error is not None:
            raise self.error
        return ReconcileResult(
            service_name=target.service_name,
            reference=reference,
            final_phase=ReconcilePhase.CONVERGED,
        )


def _coordinator(publisher=None, sessions=None, reconciler=None, ledger=None):
    return PipelineCoordinator(
        publisher or StubPublisher(),
        sessions or StubSessionManager(),
        reconciler or StubReconciler(),
        ledger=ledger,
    )


class TestCoordinatorSuccess:
    def test_all_stages_run_in_order(self, request_b123, registry_credentials, ssh_identity):
        result = _coordinator().run(
            request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        assert result.success
        assert result.outcome == PipelineOutcome.SUCCEEDED
        assert result.stage_reached == PipelineStage.SUCCEEDED
        assert [r.stage for r in result.stage_log] == [
            PipelineStage.RESOLVING,
            PipelineStage.PUBLISHING,
            PipelineStage.CONNECTING,
            PipelineStage.RECONCILING,
        ]
        assert all(r.success for r in result.stage_log)
        assert result.artifact.build_id == "b123"
        assert result.error_type is None

    def test_credentials_invalidated_after_run(
        self, request_b123, registry_credentials, ssh_identity
    ):
        _coordinator().run(
            request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        assert registry_credentials.invalidated
        assert ssh_identity.invalidated

    def test_remote_pull_credentials(
        self, request_b123, make_registry_credentials, ssh_identity
    ):
        reconciler = StubReconciler()
        pull_creds = make_registry_credentials(username="puller")
        _coordinator(reconciler=reconciler).run(
            request_b123,
            registry_credentials=make_registry_credentials(),
            ssh_identity=ssh_identity,
            remote_registry_credentials=pull_creds,
        )
        assert reconciler.credentials is pull_creds
        assert pull_creds.invalidated

    def test_explicit_run_id(self, request_b123, registry_credentials, ssh_identity):
        result = _coordinator().run(
            request_b123,
            registry_credentials=registry_credentials,
            ssh_identity=ssh_identity,
            run_id="kh-test-001",
        )
        assert result.run_id == "kh-test-001"

    def test_generated_run_ids_unique(self):
        assert PipelineCoordinator.new_run_id() != PipelineCoordinator.new_run_id()


class TestCoordinatorFailures:
    def test_bad_repository_fails_at_resolving(
        self, request_b123, registry_credentials, ssh_identity
    ):
        publisher = StubPublisher()
        bad = request_b123.model_copy(
            update={"repository": RepositoryConfig(registry_host="r.example.com", repository="Bad!")}
        )
        result = _coordinator(publisher=publisher).run(
            bad, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        assert result.outcome == PipelineOutcome.FAILED
        assert result.stage_reached == PipelineStage.RESOLVING
        assert result.error_type == "ConfigurationError"
        assert isinstance(result.cause, ConfigurationError)
        assert publisher.calls == 0

    def test_publish_failure_stops_pipeline(
        self, request_b123, registry_credentials, ssh_identity
    ):
        sessions = StubSessionManager()
        result = _coordinator(
            publisher=StubPublisher(AuthenticationError("unauthorized")), sessions=sessions
        ).run(request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity)

        assert result.stage_reached == PipelineStage.PUBLISHING
        assert result.error_type == "AuthenticationError"
        assert result.error_detail.startswith("publishing: AuthenticationError")
        assert result.safe_to_rerun
        assert sessions.opened == 0
        assert result.stage_log[-1].success is False

    def test_connect_failure(self, request_b123, registry_credentials, ssh_identity):
        reconciler = StubReconciler()
        result = _coordinator(
            sessions=StubSessionManager(UnreachableHost("no route")), reconciler=reconciler
        ).run(request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity)
        assert result.stage_reached == PipelineStage.CONNECTING
        assert result.error_type == "UnreachableHost"
        assert reconciler.calls == 0

    def test_reconcile_failure_closes_session(
        self, request_b123, registry_credentials, ssh_identity
    ):
        sessions = StubSessionManager()
        result = _coordinator(
            sessions=sessions, reconciler=StubReconciler(PullFailed("manifest unknown"))
        ).run(request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity)
        assert result.stage_reached == PipelineStage.RECONCILING
        assert result.outcome == PipelineOutcome.FAILED
        assert result.publish is not None
        assert sessions.closed == 1

    def test_degraded(self, request_b123, registry_credentials, ssh_identity):
        result = _coordinator(
            reconciler=StubReconciler(DeploymentDegraded("start failed", service_name="app"))
        ).run(request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity)
        assert result.outcome == PipelineOutcome.DEGRADED
        assert result.requires_intervention
        assert not result.safe_to_rerun
        with pytest.raises(PipelineStageError):
            result.raise_for_status()

    def test_credentials_invalidated_after_failure(
        self, request_b123, registry_credentials, ssh_identity
    ):
        _coordinator(publisher=StubPublisher(AuthenticationError("nope"))).run(
            request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        assert registry_credentials.invalidated


class TestCoordinatorCancellation:
    def test_cancelled_before_start(self, request_b123, registry_credentials, ssh_identity):
        token = CancellationToken()
        token.cancel("never mind")
        publisher = StubPublisher()
        result = _coordinator(publisher=publisher).run(
            request_b123,
            registry_credentials=registry_credentials,
            ssh_identity=ssh_identity,
            cancel_token=token,
        )
        assert result.outcome == PipelineOutcome.CANCELLED
        assert result.stage_reached == PipelineStage.RESOLVING
        assert publisher.calls == 0

    def test_cancel_during_reconcile_reports_unspecified_state(
        self, request_b123, registry_credentials, ssh_identity
    ):
        token = CancellationToken()

        def cancel_now():
            token.cancel("operator")
            token.raise_if_cancelled()

        result = _coordinator(reconciler=StubReconciler(hook=cancel_now)).run(
            request_b123,
            registry_credentials=registry_credentials,
            ssh_identity=ssh_identity,
            cancel_token=token,
        )
        assert result.outcome == PipelineOutcome.CANCELLED
        assert result.stage_reached == PipelineStage.RECONCILING
        assert result.error_type == "Cancelled"
        assert "verify app on app01.example.com manually" in result.error_detail


class TestCoordinatorLedger:
    def test_stage_entries_and_terminal_entry(
        self, request_b123, registry_credentials, ssh_identity, ledger: RunLedger
    ):
        result = _coordinator(ledger=ledger).run(
            request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        entries = ledger.get_run_entries(result.run_id)
        assert [e.stage for e in entries] == [
            "resolving", "publishing", "connecting", "reconciling", "succeeded",
        ]
        assert all(e.build_id == "b123" for e in entries)
        assert entries[-1].reference == "registry.example.com/svc/app:latest"
        assert ledger.verify_chain(result.run_id)

    def test_failure_recorded(
        self, request_b123, registry_credentials, ssh_identity, ledger: RunLedger
    ):
        result = _coordinator(
            publisher=StubPublisher(AuthenticationError("unauthorized")), ledger=ledger
        ).run(request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity)
        entries = ledger.get_run_entries(result.run_id)
        assert [e.stage for e in entries] == ["resolving", "publishing", "failed"]
        assert entries[1].success is False
        assert entries[1].error_type == "AuthenticationError"

    def test_no_secrets_in_ledger(
        self, request_b123, registry_credentials, ssh_identity, ledger: RunLedger
    ):
        result = _coordinator(ledger=ledger).run(
            request_b123, registry_credentials=registry_credentials, ssh_identity=ssh_identity
        )
        for entry in ledger.get_run_entries(result.run_id):
            assert "s3cret-token" not in entry.model_dump_json()
