"""Remote Session Manager — one SSH channel per run, commands in order.

The channel is an OpenSSH control master (``ssh -M -S <socket> -f -N``)
opened once per session.  Every :meth:`SshSession.run` multiplexes over
that socket, so all commands of a run share exactly one authenticated
connection.  Commands run one at a time under a lock, in program order:
later steps depend on the side effects of earlier ones on the host.

The session is a context manager.  On every exit path (success,
command failure, cancellation) the master is told to exit and the
temporary directory holding the socket and any inline key is removed.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import (
    AuthenticationError,
    CommandTimeout,
    KeelhaulError,
    UnreachableHost,
)
from keelhaul.core.runner import CommandRunner, SubprocessRunner
from keelhaul.models.commands import CommandOutcome
from keelhaul.models.credentials import SshIdentity
from keelhaul.models.target import RemoteTarget

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own errors (connection, auth, mux).
SSH_ERROR_EXIT = 255

_AUTH_MARKERS = (
    "permission denied",
    "host key verification failed",
    "too many authentication failures",
    "no more authentication methods",
)


class RemoteSession(Protocol):
    """Command-execution contract shared by the real and fake sessions."""

    target: RemoteTarget

    def run(
        self,
        command: str,
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutcome: ...


class SshSession:
    """An open, multiplexed SSH channel to one target.

    Obtain one through :meth:`SshSessionManager.session`; do not construct
    directly.
    """

    def __init__(
        self,
        target: RemoteTarget,
        *,
        runner: CommandRunner,
        base_args: list[str],
        control_path: Path,
        command_timeout: float | None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.target = target
        self._runner = runner
        self._base_args = base_args
        self._control_path = control_path
        self._command_timeout = command_timeout
        self._cancel_token = cancel_token
        self._lock = threading.Lock()
        self._closed = False
        self.commands_run = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def run(
        self,
        command: str,
        *,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandOutcome:
        """Run one shell command on the target and wait for it.

        Non-zero exit codes of the remote command are returned, not raised;
        the caller applies its failure policy.  Raises ``UnreachableHost``
        if the channel itself is gone, ``Cancelled`` if the run was
        cancelled, ``CommandTimeout`` if the command overran.
        """
        with self._lock:
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()
            if self._closed:
                raise UnreachableHost(
                    f"session to {self.target.host_address} is closed"
                )
            argv = [
                *self._base_args,
                "-S", str(self._control_path),
                "-o", "ControlMaster=no",
                self.target.ssh_destination,
                "--",
                command,
            ]
            logger.info("[%s] $ %s", self.target.host_address, command)
            outcome = self._runner.run(
                argv,
                stdin=stdin,
                timeout=timeout if timeout is not None else self._command_timeout,
            )
            self.commands_run += 1
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()
            if outcome.exit_code == SSH_ERROR_EXIT:
                raise UnreachableHost(
                    f"lost SSH channel to {self.target.host_address}: "
                    f"{outcome.stderr.strip()[-300:]}"
                )
            if outcome.exit_code != 0:
                logger.info(
                    "[%s] exit %d: %s",
                    self.target.host_address,
                    outcome.exit_code,
                    outcome.stderr.strip()[-300:],
                )
            return outcome

    def _mark_closed(self) -> None:
        self._closed = True


class SshSessionManager:
    """Opens scoped SSH sessions to a :class:`RemoteTarget`.

    Parameters
    ----------
    runner:
        Executes the ssh client.  Defaults to :class:`SubprocessRunner`.
    ssh_binary:
        The OpenSSH client executable.
    connect_timeout:
        Seconds allowed for establishing the channel.
    command_timeout:
        Default per-command timeout in seconds.
    strict_host_key_checking:
        Value for ssh's ``StrictHostKeyChecking`` option.
    known_hosts_file:
        Optional ``UserKnownHostsFile`` override.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        ssh_binary: str = "ssh",
        connect_timeout: int = 10,
        command_timeout: float | None = 600.0,
        strict_host_key_checking: str = "accept-new",
        known_hosts_file: Path | None = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._ssh = ssh_binary
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._strict = strict_host_key_checking
        self._known_hosts = known_hosts_file

    @contextmanager
    def session(
        self,
        target: RemoteTarget,
        identity: SshIdentity,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Iterator[SshSession]:
        """Open the channel, yield the session, always release it.

        Raises
        ------
        AuthenticationError
            The host rejected the identity or its host key did not verify.
        UnreachableHost
            The host could not be reached within ``connect_timeout``.
        Cancelled
            The run was cancelled before or while connecting.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        workdir = Path(tempfile.mkdtemp(prefix="keelhaul-ssh-"))
        os.chmod(workdir, 0o700)
        control_path = workdir / "ctl"
        unregister = None
        master_open = False
        session: SshSession | None = None
        try:
            # a cancel during connect must kill the pending ssh -M as well
            if cancel_token is not None:
                unregister = cancel_token.on_cancel(self._runner.abort)
            key_path = self._materialize_key(identity, workdir)
            base_args = self._base_args(target, key_path)
            try:
                self._open_master(target, base_args, control_path)
            except KeelhaulError:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                raise
            master_open = True
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            session = SshSession(
                target,
                runner=self._runner,
                base_args=base_args,
                control_path=control_path,
                command_timeout=self._command_timeout,
                cancel_token=cancel_token,
            )
            logger.info("SSH session to %s established", target.ssh_destination)
            yield session
        finally:
            if unregister is not None:
                unregister()
            if session is not None:
                session._mark_closed()
            if master_open:
                self._close_master(target, control_path)
            shutil.rmtree(workdir, ignore_errors=True)
            logger.info("SSH session to %s released", target.ssh_destination)

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    def _materialize_key(self, identity: SshIdentity, workdir: Path) -> Path:
        if identity.key_path is not None:
            identity.check_usable()
            return identity.key_path
        key_file = workdir / "identity"
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            key = identity.reveal()
            fh.write(key if key.endswith("\n") else key + "\n")
        return key_file

    def _base_args(self, target: RemoteTarget, key_path: Path) -> list[str]:
        args = [
            self._ssh,
            "-i", str(key_path),
            "-p", str(target.ssh_port),
            "-o", "IdentitiesOnly=yes",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", f"StrictHostKeyChecking={self._strict}",
            "-o", "ServerAliveInterval=15",
        ]
        if self._known_hosts is not None:
            args += ["-o", f"UserKnownHostsFile={self._known_hosts}"]
        return args

    def _open_master(
        self, target: RemoteTarget, base_args: list[str], control_path: Path
    ) -> None:
        argv = [
            *base_args,
            "-M",
            "-S", str(control_path),
            "-f", "-N",
            target.ssh_destination,
        ]
        try:
            outcome = self._runner.run(
                argv, timeout=self._connect_timeout + 5, detached=True
            )
        except CommandTimeout as exc:
            raise UnreachableHost(
                f"timed out connecting to {target.ssh_destination}"
            ) from exc

        if outcome.exit_code == 0:
            return
        detail = outcome.stderr.strip()[-300:]
        if any(marker in detail.lower() for marker in _AUTH_MARKERS):
            raise AuthenticationError(
                f"SSH authentication to {target.ssh_destination} failed: {detail}",
                scope="remote-host",
            )
        raise UnreachableHost(
            f"cannot reach {target.ssh_destination} (exit {outcome.exit_code}): {detail}"
        )

    def _close_master(self, target: RemoteTarget, control_path: Path) -> None:
        argv = [
            self._ssh,
            "-S", str(control_path),
            "-O", "exit",
            target.ssh_destination,
        ]
        try:
            outcome = self._runner.run(argv, timeout=self._connect_timeout)
        except CommandTimeout:
            logger.warning("Timed out closing SSH master for %s", target.ssh_destination)
            return
        if outcome.exit_code != 0:
            logger.warning(
                "SSH master for %s did not exit cleanly: %s",
                target.ssh_destination, outcome.stderr.strip(),
            )
