"""Docker CLI invocations and output classification.

Argv builders are used for local commands (publisher); the ``remote_*``
builders return shell strings for the target host, with every
interpolated value quoted.  Classification turns CLI stderr into the error
taxonomy, since the docker CLI only reports failure through exit code 1.
"""

from __future__ import annotations

import re
import shlex

from keelhaul.models.artifacts import ArtifactReference
from keelhaul.models.target import RemoteTarget

_AUTH_PATTERNS = re.compile(
    r"unauthorized|authentication required|incorrect username or password|"
    r"denied: |access denied|access to the resource is denied|"
    r"requested access to the resource is denied|invalid credentials",
    re.IGNORECASE,
)
_NETWORK_PATTERNS = re.compile(
    r"timeout|timed out|connection refused|connection reset|no such host|"
    r"network is unreachable|tls handshake|temporary failure in name resolution|"
    r"i/o timeout|unexpected eof|broken pipe|"
    r"\b50[0234]\b|service unavailable|bad gateway|too many requests|toomanyrequests",
    re.IGNORECASE,
)
_ABSENCE_PATTERNS = re.compile(r"no such container|no such object", re.IGNORECASE)
_DIGEST = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


def is_auth_failure(output: str) -> bool:
    return bool(_AUTH_PATTERNS.search(output))


def is_network_failure(output: str) -> bool:
    return bool(_NETWORK_PATTERNS.search(output))


def is_absence(output: str) -> bool:
    """Whether a stop/rm failure only says the container does not exist."""
    return bool(_ABSENCE_PATTERNS.search(output))


def parse_push_digest(output: str) -> str | None:
    """Extract the manifest digest from ``docker push`` output."""
    match = _DIGEST.search(output)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Local argv builders
# ---------------------------------------------------------------------------


def build_login_cmd(*, docker: str, registry: str, username: str) -> list[str]:
    return [docker, "login", registry, "-u", username, "--password-stdin"]


def build_logout_cmd(*, docker: str, registry: str) -> list[str]:
    return [docker, "logout", registry]


def build_inspect_image_cmd(*, docker: str, image: str) -> list[str]:
    return [docker, "image", "inspect", "--format", "{{.Id}}", image]


def build_tag_cmd(*, docker: str, source: str, target: str) -> list[str]:
    return [docker, "tag", source, target]


def build_push_cmd(*, docker: str, image: str) -> list[str]:
    return [docker, "push", image]


# ---------------------------------------------------------------------------
# Remote shell builders
# ---------------------------------------------------------------------------


def remote_login(*, docker: str, registry: str, username: str) -> str:
    return (
        f"{docker} login {shlex.quote(registry)} "
        f"-u {shlex.quote(username)} --password-stdin"
    )


def remote_logout(*, docker: str, registry: str) -> str:
    return f"{docker} logout {shlex.quote(registry)}"


def remote_pull(*, docker: str, reference: ArtifactReference) -> str:
    return f"{docker} pull {shlex.quote(reference.floating_ref)}"


def remote_stop(*, docker: str, service_name: str) -> str:
    return f"{docker} stop {shlex.quote(service_name)}"


def remote_remove(*, docker: str, service_name: str) -> str:
    return f"{docker} rm {shlex.quote(service_name)}"


def remote_run(*, docker: str, reference: ArtifactReference, target: RemoteTarget) -> str:
    args = [
        "run", "-d",
        "--name", target.service_name,
        "--restart", target.restart_policy,
        "-p", target.port_mapping,
    ]
    if target.memory_limit:
        args += ["--memory", target.memory_limit]
    if target.cpu_limit:
        args += ["--cpus", target.cpu_limit]
    for key, value in sorted(target.environment.items()):
        args += ["-e", f"{key}={value}"]
    labels = {
        **target.labels,
        "keelhaul.build-id": reference.build_id,
        "keelhaul.reference": reference.build_ref,
    }
    for key, value in sorted(labels.items()):
        args += ["--label", f"{key}={value}"]
    args.append(reference.floating_ref)
    return f"{docker} " + " ".join(shlex.quote(a) for a in args)


def remote_verify(*, docker: str, service_name: str) -> str:
    return (
        f"{docker} inspect --format '{{{{.State.Running}}}}' "
        f"{shlex.quote(service_name)}"
    )
