"""Registry Publisher — push the local image under its floating and build tags.

One ``publish`` call authenticates once, tags the local image as both
``reference.floating_ref`` and ``reference.build_ref``, pushes both, and
always logs out again.  Re-publishing identical content is a no-op for
the registry apart from timestamps.

Only ``NetworkError`` is retried (bounded exponential backoff, see
:mod:`keelhaul.core.retry`), and the login and both pushes share one
retry budget per publish.  Authentication failures and registry
rejections surface on the first attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from keelhaul.core import docker_cli
from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import (
    AuthenticationError,
    KeelhaulError,
    NetworkError,
    RegistryRejected,
)
from keelhaul.core.retry import RetryBudget, call_with_retry
from keelhaul.core.runner import CommandRunner, SubprocessRunner
from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.commands import CommandOutcome
from keelhaul.models.config import RetryPolicy
from keelhaul.models.credentials import RegistryCredentials
from keelhaul.models.results import PublishResult

logger = logging.getLogger(__name__)


class RegistryPublisher:
    """Uploads a locally built image to the registry.

    Parameters
    ----------
    runner:
        Executes the docker CLI.  Defaults to :class:`SubprocessRunner`.
    retry_policy:
        Backoff for ``NetworkError``.  ``max_attempts`` bounds the whole
        publish: at most ``max_attempts - 1`` retries across login and pushes.
    docker_binary:
        The docker executable.
    command_timeout:
        Per-command timeout in seconds; a timeout counts as a network error.
    sleep:
        Override for the backoff sleep (tests).
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        docker_binary: str = "docker",
        command_timeout: float | None = 600.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._policy = retry_policy or RetryPolicy()
        self._docker = docker_binary
        self._timeout = command_timeout
        self._sleep = sleep

    def publish(
        self,
        local_image: str,
        reference: ArtifactReference,
        credentials: RegistryCredentials,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PublishResult:
        """Push *local_image* so ``reference.floating_ref`` resolves to it.

        Raises
        ------
        AuthenticationError
            Credentials invalid, expired, invalidated, or for another host.
        NetworkError
            Still failing once the publish has used up its retries.
        RegistryRejected
            The registry refused the image, or the local image is missing.
        Cancelled
            *cancel_token* was cancelled mid-publish.
        """
        if credentials.registry_host != reference.registry_host:
            raise AuthenticationError(
                f"credentials are scoped to {credentials.registry_host!r}, "
                f"not {reference.registry_host!r}",
                scope="registry",
            )
        password = credentials.reveal()

        unregister = (
            cancel_token.on_cancel(self._runner.abort) if cancel_token else None
        )
        budget = RetryBudget(self._policy)
        logger.info("Publishing %s as %s", local_image, reference)
        try:
            self._ensure_local_image(local_image, cancel_token)
            self._login(reference, credentials.username, password, budget, cancel_token)
            try:
                digest = self._tag_and_push(local_image, reference, budget, cancel_token)
            finally:
                self._logout(reference)
        finally:
            if unregister is not None:
                unregister()

        result = PublishResult(
            reference=reference,
            pushed_refs=[reference.floating_ref, reference.build_ref],
            digest=digest,
            attempts=budget.attempts,
            retry_count=budget.retries,
        )
        logger.info(
            "Published %s (digest=%s, retries=%d)",
            reference.floating_ref, digest or "unknown", budget.retries,
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _ensure_local_image(
        self, local_image: str, cancel_token: CancellationToken | None
    ) -> None:
        outcome = self._run(
            docker_cli.build_inspect_image_cmd(docker=self._docker, image=local_image),
            cancel_token=cancel_token,
        )
        if outcome.exit_code != 0:
            raise RegistryRejected(f"local image {local_image!r} not found")

    def _login(
        self,
        reference: ArtifactReference,
        username: str,
        password: str,
        budget: RetryBudget,
        cancel_token: CancellationToken | None,
    ) -> None:
        argv = docker_cli.build_login_cmd(
            docker=self._docker, registry=reference.registry_host, username=username
        )

        def attempt() -> None:
            outcome = self._run(argv, stdin=password, cancel_token=cancel_token)
            if outcome.exit_code != 0:
                raise _classify(outcome, f"login to {reference.registry_host}")

        call_with_retry(
            attempt,
            self._policy,
            description=f"registry login {reference.registry_host}",
            cancel_token=cancel_token,
            sleep=self._sleep,
            budget=budget,
        )

    def _tag_and_push(
        self,
        local_image: str,
        reference: ArtifactReference,
        budget: RetryBudget,
        cancel_token: CancellationToken | None,
    ) -> str | None:
        digest: str | None = None
        for target in (reference.build_ref, reference.floating_ref):
            outcome = self._run(
                docker_cli.build_tag_cmd(
                    docker=self._docker, source=local_image, target=target
                ),
                cancel_token=cancel_token,
            )
            if outcome.exit_code != 0:
                raise RegistryRejected(
                    f"could not tag {local_image} as {target}: {_tail(outcome)}"
                )

            argv = docker_cli.build_push_cmd(docker=self._docker, image=target)

            def attempt(argv: list[str] = argv, target: str = target) -> str | None:
                outcome = self._run(argv, cancel_token=cancel_token)
                if outcome.exit_code != 0:
                    raise _classify(outcome, f"push {target}")
                return docker_cli.parse_push_digest(outcome.stdout + outcome.stderr)

            pushed_digest, _ = call_with_retry(
                attempt,
                self._policy,
                description=f"push {target}",
                cancel_token=cancel_token,
                sleep=self._sleep,
                budget=budget,
            )
            digest = pushed_digest or digest
        return digest

    def _logout(self, reference: ArtifactReference) -> None:
        argv = docker_cli.build_logout_cmd(
            docker=self._docker, registry=reference.registry_host
        )
        try:
            outcome = self._runner.run(argv, timeout=self._timeout)
        except KeelhaulError as exc:
            logger.warning("Registry logout from %s failed: %s", reference.registry_host, exc)
            return
        if outcome.exit_code != 0:
            logger.warning(
                "Registry logout from %s exited %d: %s",
                reference.registry_host, outcome.exit_code, _tail(outcome),
            )

    def _run(
        self,
        argv: list[str],
        *,
        stdin: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CommandOutcome:
        outcome = self._runner.run(argv, stdin=stdin, timeout=self._timeout)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return outcome


def _classify(outcome: CommandOutcome, action: str) -> KeelhaulError:
    text = f"{outcome.stderr}\n{outcome.stdout}"
    message = f"{action} failed ({outcome.exit_code}): {_tail(outcome)}"
    if docker_cli.is_auth_failure(text):
        return AuthenticationError(message, scope="registry")
    if docker_cli.is_network_failure(text):
        return NetworkError(message)
    return RegistryRejected(message)


def _tail(outcome: CommandOutcome, limit: int = 300) -> str:
    text = (outcome.stderr or outcome.stdout).strip()
    return text[-limit:]
