"""Keelhaul: publish a container image and replace its running instance on one host.

Pipeline: resolve the registry reference for a build, push it under a
floating and a build-specific tag, open one SSH channel to the target,
and reconcile the named container there (pull, stop, remove, start,
verify) with an explicit degraded state for the non-atomic swap.
"""

__version__ = "0.1.0"
__description__ = (
    "Stage-sequenced container deployment with idempotent remote replacement"
)

from keelhaul.core.orchestrator import PipelineCoordinator
from keelhaul.cli.app import app as cli

__all__ = ["PipelineCoordinator", "cli", "__version__"]
