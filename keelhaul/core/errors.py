"""Deployment error taxonomy.

Every stage either succeeds or raises exactly one of these.  The
coordinator is the only place they are turned into data; everywhere else
they propagate.

``fatal`` errors stop the run.  ``retryable`` errors may be retried by the
stage that raised them (only the publisher does so) before they become fatal.
"""

from __future__ import annotations


class KeelhaulError(RuntimeError):
    """Base class for all pipeline errors."""

    fatal: bool = True
    retryable: bool = False


class ConfigurationError(KeelhaulError):
    """Repository or target coordinates are missing or malformed (pre-flight)."""


class AuthenticationError(KeelhaulError):
    """Credentials were rejected, expired, or already invalidated.

    ``scope`` tells which handshake failed: ``registry`` (publisher),
    ``remote-host`` (SSH) or ``remote-registry`` (pull on the target).
    """

    def __init__(self, message: str, *, scope: str = "registry") -> None:
        super().__init__(message)
        self.scope = scope


class NetworkError(KeelhaulError):
    """Transient network failure.  Retried with bounded backoff by the publisher."""

    retryable = True


class CommandTimeout(NetworkError):
    """A local or remote command exceeded its timeout."""


class RegistryRejected(KeelhaulError):
    """The registry refused the upload (quota, malformed image, missing image)."""


class UnreachableHost(KeelhaulError):
    """The SSH channel could not be established or was lost mid-run."""


class PullFailed(KeelhaulError):
    """The target host could not pull the floating tag."""


class RemoteCommandFailed(KeelhaulError):
    """A remote step failed before any running instance was touched."""

    def __init__(self, message: str, *, step: str = "", exit_code: int | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.exit_code = exit_code


class DeploymentDegraded(KeelhaulError):
    """The previous instance is gone and the new one is not running.

    Requires urgent manual intervention: no instance named ``service_name``
    is serving on the target.
    """

    def __init__(self, message: str, *, service_name: str = "", step: str = "") -> None:
        super().__init__(message)
        self.service_name = service_name
        self.step = step


class Cancelled(KeelhaulError):
    """The caller cancelled the run.

    Not an error in the failure sense.  Remote commands already dispatched
    are not rolled back; the target state is unspecified and must be
    verified manually.
    """


class PipelineStageError(KeelhaulError):
    """Wraps a stage failure with the name of the stage it happened in."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage}: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.cause = cause
