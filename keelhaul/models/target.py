"""The single deployment target of a run."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]+
_CONTAINER_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]+$")


class RemoteTarget(BaseModel):
    """Host, SSH login and the fixed container mapping for one service.

    ``service_name`` names the container on the host and must be unique
    there so unrelated deployments are never touched.  ``ssh_user`` is the
    login identity name; the key material travels separately in an
    :class:`~keelhaul.models.credentials.SshIdentity`.
    """

    model_config = ConfigDict(frozen=True)

    host_address: str
    ssh_user: str = "deploy"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    service_name: str
    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(default=8080, ge=1, le=65535)
    restart_policy: str = "unless-stopped"
    memory_limit: str | None = None  # e.g. "512m"
    cpu_limit: str | None = None  # e.g. "1.5"
    environment: dict[str, str] = {}
    labels: dict[str, str] = {}

    @field_validator("host_address")
    @classmethod
    def _host_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("host_address must be non-empty")
        return value.strip()

    @field_validator("service_name")
    @classmethod
    def _valid_container_name(cls, value: str) -> str:
        if not _CONTAINER_NAME.match(value):
            raise ValueError(
                f"service_name {value!r} is not a valid container name"
            )
        return value

    @property
    def port_mapping(self) -> str:
        return f"{self.host_port}:{self.container_port}"

    @property
    def ssh_destination(self) -> str:
        return f"{self.ssh_user}@{self.host_address}"
