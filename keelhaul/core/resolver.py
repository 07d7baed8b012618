"""Artifact Reference Resolver — build id + repository config -> reference.

Pure and deterministic.  Everything is validated against the Docker
reference grammar so malformed coordinates fail pre-flight with
``ConfigurationError`` instead of half-way through a push.
"""

from __future__ import annotations

import re
import string

from keelhaul.core.errors import ConfigurationError
from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.config import RepositoryConfig

_HOST = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
    r"(?:\.(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?))*"
    r"(?::[0-9]{1,5})?$"
)
_PATH_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

_TEMPLATE_FIELDS = {"build_id", "short_id"}


def resolve_artifact(build_id: str, repository: RepositoryConfig) -> ArtifactReference:
    """Produce the ``ArtifactReference`` for one build.

    The floating tag comes straight from configuration; the build tag is
    ``repository.build_tag_template`` rendered with ``{build_id}`` and
    ``{short_id}`` (the first 12 characters of the build id).

    Raises
    ------
    ConfigurationError
        If the registry host, repository path, floating tag, build id or
        rendered build tag is missing or malformed.
    """
    host = (repository.registry_host or "").strip()
    if not host:
        raise ConfigurationError("registry_host is required")
    if not _HOST.match(host):
        raise ConfigurationError(f"registry_host {host!r} is not a valid host[:port]")

    repo = (repository.repository or "").strip().strip("/")
    if not repo:
        raise ConfigurationError("repository is required")
    for component in repo.split("/"):
        if not _PATH_COMPONENT.match(component):
            raise ConfigurationError(
                f"repository {repo!r} has invalid path component {component!r}"
            )

    floating = (repository.floating_tag or "").strip()
    if not _TAG.match(floating):
        raise ConfigurationError(f"floating tag {floating!r} is not a valid tag")

    build_id = (build_id or "").strip()
    if not build_id:
        raise ConfigurationError("build id is required")

    build_tag = _render_build_tag(repository.build_tag_template, build_id)
    if not _TAG.match(build_tag):
        raise ConfigurationError(
            f"build tag {build_tag!r} rendered from {repository.build_tag_template!r} "
            "is not a valid tag"
        )
    if build_tag == floating:
        raise ConfigurationError(
            f"build tag and floating tag are both {floating!r}; the build tag must be immutable"
        )

    return ArtifactReference(
        registry_host=host,
        repository=repo,
        tag=floating,
        build_id=build_id,
        build_tag=build_tag,
    )


def _render_build_tag(template: str, build_id: str) -> str:
    try:
        fields = {
            name for _, name, _, _ in string.Formatter().parse(template) if name is not None
        }
    except ValueError as exc:
        raise ConfigurationError(f"build_tag_template {template!r} is malformed: {exc}") from exc
    unknown = fields - _TEMPLATE_FIELDS
    if unknown:
        raise ConfigurationError(
            f"build_tag_template uses unknown field(s): {sorted(unknown)}"
        )
    return template.format(build_id=build_id, short_id=build_id[:12])
