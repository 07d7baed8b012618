"""``keelhaul deploy BUILD_ID`` — publish a build and replace it on the target.

Exit codes: 0 succeeded, 1 failed (nothing changed, safe to re-run),
2 refused (configuration or quality gate), 3 degraded (service down),
4 cancelled (target state unspecified).
"""

from __future__ import annotations

import threading
from pathlib import Path

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import ConfigurationError
from keelhaul.core.orchestrator import PipelineCoordinator
from keelhaul.cli.commands._options import load_settings, parse_env_pairs, parse_port_mapping
from keelhaul.cli.render import print_result
from keelhaul.models.config import PipelineRequest
from keelhaul.models.credentials import RegistryCredentials, SshIdentity
from keelhaul.models.results import PipelineOutcome, PipelineResult

console = Console()

EXIT_CODES: dict[PipelineOutcome, int] = {
    PipelineOutcome.SUCCEEDED: 0,
    PipelineOutcome.FAILED: 1,
    PipelineOutcome.DEGRADED: 3,
    PipelineOutcome.CANCELLED: 4,
}
EXIT_REFUSED = 2


def deploy_cmd(
    build_id: str = typer.Argument(..., help="Build identifier (commit SHA or build number)."),
    image: str = typer.Option(..., "--image", "-i", help="Local image produced by the build."),
    registry: str = typer.Option(None, "--registry", help="Registry host."),
    repository: str = typer.Option(None, "--repository", "-r", help="Repository path, e.g. svc/app."),
    tag: str = typer.Option(None, "--tag", "-t", help="Floating tag (default: latest)."),
    host: str = typer.Option(None, "--host", "-H", help="Target host address."),
    service: str = typer.Option(None, "--service", "-s", help="Container name on the target."),
    port: str = typer.Option(None, "--port", "-p", help="HOST_PORT:CONTAINER_PORT mapping."),
    ssh_user: str = typer.Option(None, "--ssh-user", help="SSH login user."),
    env: list[str] = typer.Option(None, "--env", "-e", help="KEY=VALUE passed to the container."),
    gate_passed: bool = typer.Option(
        True,
        "--gate-passed/--gate-failed",
        help="Result of the upstream quality gate. A failed gate refuses to deploy.",
    ),
    registry_username: str = typer.Option(
        None, envvar="KEELHAUL_REGISTRY_USERNAME", help="Registry user."
    ),
    registry_password: str = typer.Option(
        None, envvar="KEELHAUL_REGISTRY_PASSWORD", help="Registry password or token.",
        show_default=False,
    ),
    remote_username: str = typer.Option(
        None, envvar="KEELHAUL_REMOTE_REGISTRY_USERNAME",
        help="Separate pull user for the target (defaults to the registry user).",
    ),
    remote_password: str = typer.Option(
        None, envvar="KEELHAUL_REMOTE_REGISTRY_PASSWORD", help="Password for the pull user.",
        show_default=False,
    ),
    ssh_key_path: Path = typer.Option(
        None, envvar="KEELHAUL_SSH_KEY_PATH", help="Private key for the target."
    ),
    ledger_db: Path = typer.Option(None, "--ledger", "-l", help="Audit ledger database."),
    no_ledger: bool = typer.Option(False, "--no-ledger", help="Do not write the audit ledger."),
) -> None:
    """Publish BUILD_ID and replace the running instance on the target host."""
    if not gate_passed:
        console.print("[bold red]Quality gate failed:[/bold red] refusing to deploy.")
        raise typer.Exit(code=EXIT_REFUSED)

    host_port, container_port = parse_port_mapping(port)
    try:
        settings = load_settings(
            registry_host=registry,
            repository=repository,
            floating_tag=tag,
            target_host=host,
            service_name=service,
            host_port=host_port,
            container_port=container_port,
            ssh_user=ssh_user,
            ledger_path=ledger_db,
        )
        if not registry_username or not registry_password:
            raise ConfigurationError(
                "registry credentials missing: set KEELHAUL_REGISTRY_USERNAME "
                "and KEELHAUL_REGISTRY_PASSWORD"
            )
        if ssh_key_path is None:
            raise ConfigurationError("SSH key missing: set KEELHAUL_SSH_KEY_PATH")
        request = PipelineRequest(
            build_id=build_id,
            local_image=image,
            repository=settings.repository_config(),
            target=settings.remote_target(parse_env_pairs(env)),
        )
        coordinator = PipelineCoordinator.from_settings(settings, with_ledger=not no_ledger)
    except (ConfigurationError, ValidationError) as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_REFUSED) from None

    registry_credentials = RegistryCredentials(
        registry_host=request.repository.registry_host,
        username=registry_username,
        password=SecretStr(registry_password),
    )
    pull_credentials = None
    if remote_username and remote_password:
        pull_credentials = RegistryCredentials(
            registry_host=request.repository.registry_host,
            username=remote_username,
            password=SecretStr(remote_password),
        )
    identity = SshIdentity(username=request.target.ssh_user, key_path=ssh_key_path)

    result = _run_interruptible(
        coordinator, request, registry_credentials, identity, pull_credentials
    )
    print_result(console, result)
    raise typer.Exit(code=EXIT_CODES[result.outcome])


def _run_interruptible(
    coordinator: PipelineCoordinator,
    request: PipelineRequest,
    registry_credentials: RegistryCredentials,
    identity: SshIdentity,
    pull_credentials: RegistryCredentials | None = None,
) -> PipelineResult:
    """Run the pipeline in a worker thread so Ctrl+C can cancel it promptly."""
    token = CancellationToken()
    holder: dict[str, PipelineResult] = {}
    failure: list[BaseException] = []

    def _target() -> None:
        try:
            holder["result"] = coordinator.run(
                request,
                registry_credentials=registry_credentials,
                ssh_identity=identity,
                remote_registry_credentials=pull_credentials,
                cancel_token=token,
            )
        except BaseException as exc:  # re-raised on the main thread
            failure.append(exc)

    worker = threading.Thread(target=_target, name="keelhaul-pipeline", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling... waiting for the in-flight step to abort.[/yellow]")
        token.cancel("interrupted by user")
        worker.join()

    if failure:
        raise failure[0]
    return holder["result"]
