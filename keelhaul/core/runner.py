"""Local process execution for the docker and ssh CLIs.

All external programs are run through a :class:`CommandRunner` so the
publisher and the SSH session can be tested against a fake.  Output is
captured, never streamed, and stdin is the only channel secrets travel on.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from datetime import datetime, timezone
from typing import Protocol

from keelhaul.core.errors import CommandTimeout, ConfigurationError
from keelhaul.models.commands import CommandOutcome

logger = logging.getLogger(__name__)


class CommandRunner(Protocol):
    """Runs one argv to completion and reports its outcome."""

    def run(
        self,
        argv: list[str],
        *,
        stdin: str | None = None,
        timeout: float | None = None,
        detached: bool = False,
    ) -> CommandOutcome: ...

    def abort(self) -> None: ...


class SubprocessRunner:
    """``CommandRunner`` backed by :mod:`subprocess`.

    Runs one process at a time.  :meth:`abort` terminates the process that
    is currently running (used for cancellation); the interrupted ``run``
    returns with the process's non-zero exit code.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: subprocess.Popen[str] | None = None

    def run(
        self,
        argv: list[str],
        *,
        stdin: str | None = None,
        timeout: float | None = None,
        detached: bool = False,
    ) -> CommandOutcome:
        """Run *argv* and wait for it to exit.

        With ``detached=True`` output is collected through temp files
        instead of pipes, for commands that leave a background child
        holding their stdio (``ssh -f``); waiting on pipes would block
        until that child exits.
        """
        logger.debug("$ %s", " ".join(argv))
        started = datetime.now(timezone.utc)
        if detached:
            with tempfile.TemporaryFile("w+") as out, tempfile.TemporaryFile("w+") as err:
                proc = self._spawn(argv, stdin, out, err)
                self._wait(proc, argv, stdin, timeout)
                out.seek(0)
                err.seek(0)
                stdout, stderr = out.read(), err.read()
        else:
            proc = self._spawn(argv, stdin, subprocess.PIPE, subprocess.PIPE)
            stdout, stderr = self._wait(proc, argv, stdin, timeout)

        return CommandOutcome(
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            started_at=started,
            finished_at=datetime.now(timezone.utc),
        )

    def _spawn(self, argv: list[str], stdin: str | None, stdout, stderr) -> subprocess.Popen[str]:
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                text=True,
            )
        except OSError as exc:
            # the executable path comes from settings
            raise ConfigurationError(f"cannot execute {argv[0]!r}: {exc.strerror or exc}") from exc
        with self._lock:
            self._active = proc
        return proc

    def _wait(
        self,
        proc: subprocess.Popen[str],
        argv: list[str],
        stdin: str | None,
        timeout: float | None,
    ) -> tuple[str | None, str | None]:
        try:
            return proc.communicate(input=stdin, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            proc.communicate()
            raise CommandTimeout(
                f"Command timed out after {timeout}s: {argv[0]}"
            ) from exc
        finally:
            with self._lock:
                self._active = None

    def abort(self) -> None:
        with self._lock:
            proc = self._active
        if proc is not None and proc.poll() is None:
            logger.warning("Terminating in-flight process %s", proc.pid)
            proc.terminate()
