"""Keelhaul data models — all Pydantic v2, frozen where they are values."""

from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.commands import (
    CommandOutcome,
    DeploymentCommand,
    FailurePolicy,
    ReconcileStep,
)
from keelhaul.models.config import PipelineRequest, RepositoryConfig, RetryPolicy
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
from keelhaul.models.stages import (
    RECONCILE_TRANSITIONS,
    STAGE_ORDER,
    VALID_TRANSITIONS,
    PipelineStage,
    ReconcilePhase,
    StageTransition,
)
from keelhaul.models.target import RemoteTarget

__all__ = [
    # artifacts
    "ArtifactReference",
    # config
    "RepositoryConfig",
    "RetryPolicy",
    "PipelineRequest",
    # target
    "RemoteTarget",
    # credentials
    "RegistryCredentials",
    "SshIdentity",
    "credential_scope",
    # commands
    "FailurePolicy",
    "ReconcileStep",
    "DeploymentCommand",
    "CommandOutcome",
    # stages
    "PipelineStage",
    "ReconcilePhase",
    "StageTransition",
    "VALID_TRANSITIONS",
    "RECONCILE_TRANSITIONS",
    "STAGE_ORDER",
    # results
    "PublishResult",
    "ReconcileResult",
    "StageRecord",
    "PipelineOutcome",
    "PipelineResult",
    # ledger
    "LedgerEntry",
]
