"""Deployment Reconciler — replace the running instance on the target.

The remote sequence is an ordered list of typed :class:`DeploymentCommand`
values, executed once each over a single session:

1. ``LOGIN``  docker login on the target (its own handshake, separate
   from the publisher's)
2. ``PULL``   pull the floating tag
3. ``STOP``   stop ``service_name`` (tolerates absence)
4. ``REMOVE`` remove ``service_name`` (tolerates absence)
5. ``START``  run the new instance on ``host_port:container_port``
6. ``VERIFY`` confirm the new instance is running

Stop/remove/start is not atomic.  A :class:`ReconcileStateMachine` tracks
how far the target got: any failure before STOP leaves the old instance
alone and ends in FAILED; any failure once STOP has executed ends in
DEGRADED and raises ``DeploymentDegraded``, because the previous
instance's definition is gone and nothing is serving.  No automatic
rollback is attempted.
"""

from __future__ import annotations

import logging

from pydantic import SecretStr

from keelhaul.core import docker_cli
from keelhaul.core.errors import (
    AuthenticationError,
    DeploymentDegraded,
    KeelhaulError,
    NetworkError,
    PullFailed,
    RemoteCommandFailed,
    UnreachableHost,
)
from keelhaul.core.session import RemoteSession
from keelhaul.core.stage_machine import ReconcileStateMachine
from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.commands import (
    CommandOutcome,
    DeploymentCommand,
    FailurePolicy,
    ReconcileStep,
)
from keelhaul.models.credentials import RegistryCredentials
from keelhaul.models.results import ReconcileResult
from keelhaul.models.stages import ReconcilePhase
from keelhaul.models.target import RemoteTarget

logger = logging.getLogger(__name__)


class DeploymentReconciler:
    """Builds and executes the remote replacement plan.

    Parameters
    ----------
    docker_binary:
        Docker executable on the target (may be e.g. ``"sudo docker"``).
    command_timeout:
        Per-command timeout override; ``None`` uses the session default.
    """

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        command_timeout: float | None = None,
    ) -> None:
        self._docker = docker_binary
        self._timeout = command_timeout

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def plan(
        self,
        reference: ArtifactReference,
        target: RemoteTarget,
        credentials: RegistryCredentials | None = None,
    ) -> list[DeploymentCommand]:
        """Return the ordered remote commands for one reconcile.

        Without *credentials* the LOGIN step is omitted (public images).
        """
        docker = self._docker
        commands: list[DeploymentCommand] = []
        if credentials is not None:
            commands.append(
                DeploymentCommand(
                    step=ReconcileStep.LOGIN,
                    description=f"Authenticate target to {reference.registry_host}",
                    shell_invocation=docker_cli.remote_login(
                        docker=docker,
                        registry=reference.registry_host,
                        username=credentials.username,
                    ),
                    stdin=SecretStr(credentials.reveal()),
                )
            )
        commands += [
            DeploymentCommand(
                step=ReconcileStep.PULL,
                description=f"Pull {reference.floating_ref}",
                shell_invocation=docker_cli.remote_pull(docker=docker, reference=reference),
            ),
            DeploymentCommand(
                step=ReconcileStep.STOP,
                description=f"Stop running instance {target.service_name}",
                shell_invocation=docker_cli.remote_stop(
                    docker=docker, service_name=target.service_name
                ),
                failure_policy=FailurePolicy.TOLERATE_ABSENCE,
            ),
            DeploymentCommand(
                step=ReconcileStep.REMOVE,
                description=f"Remove instance {target.service_name}",
                shell_invocation=docker_cli.remote_remove(
                    docker=docker, service_name=target.service_name
                ),
                failure_policy=FailurePolicy.TOLERATE_ABSENCE,
            ),
            DeploymentCommand(
                step=ReconcileStep.START,
                description=(
                    f"Start {target.service_name} on {target.port_mapping} "
                    f"from {reference.floating_ref}"
                ),
                shell_invocation=docker_cli.remote_run(
                    docker=docker, reference=reference, target=target
                ),
            ),
            DeploymentCommand(
                step=ReconcileStep.VERIFY,
                description=f"Verify {target.service_name} is running",
                shell_invocation=docker_cli.remote_verify(
                    docker=docker, service_name=target.service_name
                ),
            ),
        ]
        return commands

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def reconcile(
        self,
        session: RemoteSession,
        reference: ArtifactReference,
        target: RemoteTarget,
        credentials: RegistryCredentials | None = None,
    ) -> ReconcileResult:
        """Execute the plan over *session*.

        Raises
        ------
        AuthenticationError
            The target's registry login was rejected (scope ``remote-registry``).
        PullFailed
            The floating tag could not be pulled; nothing else was issued.
        RemoteCommandFailed
            Stop failed for a reason other than absence; the old instance
            was left as it was.
        DeploymentDegraded
            Remove, start or verify failed (or the channel was lost) after
            stop ran; no instance is serving.
        UnreachableHost, NetworkError
            The channel was lost before stop ran.
        Cancelled
            The run was cancelled; target state unspecified.
        """
        commands = self.plan(reference, target, credentials)
        machine = ReconcileStateMachine()
        if credentials is None:
            machine.advance(ReconcilePhase.AUTHENTICATED)

        outcomes: list[CommandOutcome] = []
        previous_found = False
        container_id: str | None = None
        logged_in = False

        logger.info(
            "Reconciling %s on %s with %s",
            target.service_name, target.host_address, reference,
        )
        try:
            for command in commands:
                outcome = self._execute(session, command, machine, target)
                outcomes.append(outcome)

                error = self._evaluate(command, outcome, reference, target)
                if error is not None:
                    terminal = machine.fail()
                    logger.error(
                        "%s failed on %s (%s): %s",
                        command.step.value, target.host_address, terminal.value, error,
                    )
                    raise error

                if command.step == ReconcileStep.LOGIN:
                    logged_in = True
                elif command.step == ReconcileStep.PULL and logged_in:
                    self._logout(session, reference)
                    logged_in = False
                elif command.step == ReconcileStep.STOP:
                    previous_found = not outcome.absent
                elif command.step == ReconcileStep.START:
                    container_id = outcome.stdout.strip().splitlines()[-1] if outcome.stdout.strip() else None

                machine.advance(command.step.phase)
                logger.info(
                    "%s ok%s", command.description, " (absent)" if outcome.absent else ""
                )
        finally:
            if logged_in:
                self._logout(session, reference)

        logger.info(
            "%s converged on %s (%s)",
            target.service_name, target.host_address, reference.build_id,
        )
        return ReconcileResult(
            service_name=target.service_name,
            reference=reference,
            final_phase=machine.phase,
            outcomes=outcomes,
            previous_instance_found=previous_found,
            container_id=container_id,
        )

    def _execute(
        self,
        session: RemoteSession,
        command: DeploymentCommand,
        machine: ReconcileStateMachine,
        target: RemoteTarget,
    ) -> CommandOutcome:
        stdin = command.stdin.get_secret_value() if command.stdin is not None else None
        try:
            outcome = session.run(
                command.shell_invocation, stdin=stdin, timeout=self._timeout
            )
        except (UnreachableHost, NetworkError) as exc:
            terminal = machine.fail()
            if terminal == ReconcilePhase.DEGRADED:
                raise DeploymentDegraded(
                    f"lost contact with {target.host_address} during "
                    f"{command.step.value} after stopping {target.service_name}: {exc}",
                    service_name=target.service_name,
                    step=command.step.value,
                ) from exc
            raise

        absent = (
            outcome.exit_code != 0
            and command.failure_policy == FailurePolicy.TOLERATE_ABSENCE
            and docker_cli.is_absence(outcome.stderr + outcome.stdout)
        )
        return outcome.model_copy(update={"step": command.step, "absent": absent})

    def _evaluate(
        self,
        command: DeploymentCommand,
        outcome: CommandOutcome,
        reference: ArtifactReference,
        target: RemoteTarget,
    ) -> KeelhaulError | None:
        step = command.step
        detail = (outcome.stderr or outcome.stdout).strip()[-300:]

        if step == ReconcileStep.VERIFY and outcome.exit_code == 0:
            if outcome.stdout.strip().lower() == "true":
                return None
            return DeploymentDegraded(
                f"{target.service_name} is not running after start "
                f"(state: {outcome.stdout.strip() or 'unknown'})",
                service_name=target.service_name,
                step=step.value,
            )
        if outcome.ok:
            return None

        if step == ReconcileStep.LOGIN:
            if docker_cli.is_network_failure(detail) and not docker_cli.is_auth_failure(detail):
                return PullFailed(
                    f"target cannot reach {reference.registry_host}: {detail}"
                )
            return AuthenticationError(
                f"target login to {reference.registry_host} failed: {detail}",
                scope="remote-registry",
            )
        if step == ReconcileStep.PULL:
            return PullFailed(f"cannot pull {reference.floating_ref}: {detail}")
        if step == ReconcileStep.STOP:
            return RemoteCommandFailed(
                f"cannot stop {target.service_name}: {detail}",
                step=step.value,
                exit_code=outcome.exit_code,
            )
        return DeploymentDegraded(
            f"{step.value} of {target.service_name} failed after the previous "
            f"instance was stopped: {detail}",
            service_name=target.service_name,
            step=step.value,
        )

    def _logout(self, session: RemoteSession, reference: ArtifactReference) -> None:
        command = docker_cli.remote_logout(docker=self._docker, registry=reference.registry_host)
        try:
            outcome = session.run(command, timeout=self._timeout)
        except KeelhaulError as exc:
            logger.warning("Target logout from %s failed: %s", reference.registry_host, exc)
            return
        if outcome.exit_code != 0:
            logger.warning(
                "Target logout from %s exited %d", reference.registry_host, outcome.exit_code
            )
