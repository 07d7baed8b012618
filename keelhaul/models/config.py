"""Pipeline input and policy models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from keelhaul.models.target import RemoteTarget


class RepositoryConfig(BaseModel):
    """Static repository coordinates, supplied by the config-loading layer."""

    model_config = ConfigDict(frozen=True)

    registry_host: str
    repository: str
    floating_tag: str = "latest"
    build_tag_template: str = "{build_id}"


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for retryable network failures.

    Delay before retry *n* (1-based) is
    ``min(base_delay_seconds * backoff_factor ** (n - 1), max_delay_seconds)``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=30.0, ge=0)

    def delay_for(self, retry_number: int) -> float:
        delay = self.base_delay_seconds * self.backoff_factor ** (retry_number - 1)
        return min(delay, self.max_delay_seconds)


class PipelineRequest(BaseModel):
    """Everything a single pipeline run needs except credentials."""

    model_config = ConfigDict(frozen=True)

    build_id: str
    local_image: str  # opaque reference produced by the image build step
    repository: RepositoryConfig
    target: RemoteTarget
