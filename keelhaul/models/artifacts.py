"""Registry coordinates for a published image.

The floating tag and the build id are two distinct fields even though the
registry protocol presents both as "a tag": the floating tag is a mutable
pointer reassigned on every publish, the build id is immutable and is what
audit trails and idempotence reasoning key on.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class ArtifactReference(BaseModel):
    """Fully-qualified registry coordinate for one build of one image."""

    model_config = ConfigDict(frozen=True)

    registry_host: str
    repository: str  # e.g. "svc/app"
    tag: str  # floating, e.g. "latest"
    build_id: str  # immutable digest or build identifier
    build_tag: str  # immutable tag rendered from build_id

    @field_validator("repository", "tag", "build_id", "build_tag")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be non-empty")
        return value

    @property
    def repository_path(self) -> str:
        """``host/repository`` without any tag."""
        if self.registry_host:
            return f"{self.registry_host}/{self.repository}"
        return self.repository

    @property
    def floating_ref(self) -> str:
        """The mutable reference the target pulls, e.g. ``host/svc/app:latest``."""
        return f"{self.repository_path}:{self.tag}"

    @property
    def build_ref(self) -> str:
        """The immutable build-specific reference, e.g. ``host/svc/app:b123``."""
        return f"{self.repository_path}:{self.build_tag}"

    def __str__(self) -> str:
        return f"{self.floating_ref} (build {self.build_id})"
