"""Runtime configuration — env-driven via pydantic-settings.

Every setting can be overridden with a ``KEELHAUL_*`` environment variable
or a ``.env`` file in the working directory.

Examples
--------
Override via environment::

    export KEELHAUL_REGISTRY_HOST=registry.example.com
    export KEELHAUL_REPOSITORY=svc/app
    export KEELHAUL_TARGET_HOST=app01.example.com
    export KEELHAUL_SERVICE_NAME=app
    export KEELHAUL_HOST_PORT=80

Credentials are deliberately not settings: they are handed to the
pipeline per run by the caller (the CLI reads them from the environment
as the hand-off from the secret store).
"""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from keelhaul.core.errors import ConfigurationError
from keelhaul.models.config import RepositoryConfig, RetryPolicy
from keelhaul.models.target import RemoteTarget


class KeelhaulSettings(BaseSettings):
    """Deployment settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="KEELHAUL_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Audit ledger
    ledger_path: Path = Path(".keelhaul/ledger.db")

    # Registry coordinates
    registry_host: str = ""
    repository: str = ""
    floating_tag: str = "latest"
    build_tag_template: str = "{build_id}"

    # Deployment target
    target_host: str = ""
    ssh_user: str = "deploy"
    ssh_port: int = 22
    service_name: str = ""
    host_port: int = 80
    container_port: int = 8080
    restart_policy: str = "unless-stopped"
    memory_limit: str | None = None
    cpu_limit: str | None = None

    # Publish retry
    publish_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 30.0

    # Execution
    connect_timeout_seconds: int = 10
    command_timeout_seconds: float = 600.0
    docker_binary: str = "docker"
    remote_docker_binary: str = "docker"
    ssh_binary: str = "ssh"
    strict_host_key_checking: str = "accept-new"
    known_hosts_file: Path | None = None

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def repository_config(self) -> RepositoryConfig:
        """Registry coordinates as a model; resolver validates the grammar."""
        missing = [
            name for name in ("registry_host", "repository") if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                "missing registry setting(s): "
                + ", ".join(f"KEELHAUL_{m.upper()}" for m in missing)
            )
        return RepositoryConfig(
            registry_host=self.registry_host,
            repository=self.repository,
            floating_tag=self.floating_tag,
            build_tag_template=self.build_tag_template,
        )

    def remote_target(self, environment: dict[str, str] | None = None) -> RemoteTarget:
        missing = [
            name for name in ("target_host", "service_name") if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                "missing target setting(s): "
                + ", ".join(f"KEELHAUL_{m.upper()}" for m in missing)
            )
        try:
            return RemoteTarget(
                host_address=self.target_host,
                ssh_user=self.ssh_user,
                ssh_port=self.ssh_port,
                service_name=self.service_name,
                host_port=self.host_port,
                container_port=self.container_port,
                restart_policy=self.restart_policy,
                memory_limit=self.memory_limit,
                cpu_limit=self.cpu_limit,
                environment=environment or {},
            )
        except ValidationError as exc:
            raise ConfigurationError(f"invalid target settings: {exc}") from exc

    def retry_policy(self) -> RetryPolicy:
        try:
            return RetryPolicy(
                max_attempts=self.publish_max_attempts,
                base_delay_seconds=self.backoff_base_seconds,
                backoff_factor=self.backoff_factor,
                max_delay_seconds=self.backoff_max_seconds,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"invalid retry settings: {exc}") from exc
