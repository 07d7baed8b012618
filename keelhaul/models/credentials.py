"""Per-run credential objects.

Credentials are handed in by the secret-management layer, used by exactly
one run, and invalidated when that run ends.  Secret values are held as
``SecretStr`` so they never appear in reprs, logs, or ledger entries; the
only way to read one is :meth:`reveal`, which refuses once the object has
been invalidated or has expired.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import ClassVar

from pydantic import BaseModel, PrivateAttr, SecretStr, field_validator, model_validator

from keelhaul.core.errors import AuthenticationError


class _ScopedCredential(BaseModel):
    expires_at: datetime | None = None

    _invalidated: bool = PrivateAttr(default=False)

    _scope: ClassVar[str] = "registry"

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # naive timestamps from the secret store are UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def invalidate(self) -> None:
        """Make the secret unreadable for the rest of the process."""
        self._invalidated = True

    def check_usable(self) -> None:
        """Raise ``AuthenticationError`` if the secret may no longer be used."""
        if self._invalidated:
            raise AuthenticationError(
                f"{type(self).__name__} has been invalidated", scope=self._scope
            )
        if self.expires_at is not None and datetime.now(timezone.utc) >= self.expires_at:
            raise AuthenticationError(
                f"{type(self).__name__} expired at {self.expires_at.isoformat()}",
                scope=self._scope,
            )


class RegistryCredentials(_ScopedCredential):
    """Push/pull credentials for one registry host."""

    registry_host: str
    username: str
    password: SecretStr

    def reveal(self) -> str:
        self.check_usable()
        return self.password.get_secret_value()


class SshIdentity(_ScopedCredential):
    """Key material for the SSH login to the target.

    Exactly one of ``private_key`` (PEM text) or ``key_path`` must be set.
    Inline key material is written to a private temp file for the lifetime
    of one session only.
    """

    _scope: ClassVar[str] = "remote-host"

    username: str | None = None
    private_key: SecretStr | None = None
    key_path: Path | None = None

    @model_validator(mode="after")
    def _one_key_source(self) -> "SshIdentity":
        if (self.private_key is None) == (self.key_path is None):
            raise ValueError("exactly one of private_key or key_path is required")
        return self

    def reveal(self) -> str:
        self.check_usable()
        if self.private_key is None:
            raise AuthenticationError("identity has no inline key", scope=self._scope)
        return self.private_key.get_secret_value()


@contextmanager
def credential_scope(*credentials: _ScopedCredential | None) -> Iterator[None]:
    """Invalidate every given credential when the block exits, however it exits."""
    try:
        yield
    finally:
        for cred in credentials:
            if cred is not None:
                cred.invalidate()
