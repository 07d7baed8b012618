"""``keelhaul plan BUILD_ID`` — show the reference and remote commands without running them."""

from __future__ import annotations

import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console

from keelhaul.core.errors import ConfigurationError
from keelhaul.core.reconciler import DeploymentReconciler
from keelhaul.core.resolver import resolve_artifact
from keelhaul.cli.commands._options import load_settings, parse_env_pairs, parse_port_mapping
from keelhaul.cli.render import plan_table
from keelhaul.models.credentials import RegistryCredentials

console = Console()


def plan_cmd(
    build_id: str = typer.Argument(..., help="Build identifier."),
    registry: str = typer.Option(None, "--registry", help="Registry host."),
    repository: str = typer.Option(None, "--repository", "-r", help="Repository path."),
    tag: str = typer.Option(None, "--tag", "-t", help="Floating tag."),
    host: str = typer.Option(None, "--host", "-H", help="Target host address."),
    service: str = typer.Option(None, "--service", "-s", help="Container name on the target."),
    port: str = typer.Option(None, "--port", "-p", help="HOST_PORT:CONTAINER_PORT mapping."),
    env: list[str] = typer.Option(None, "--env", "-e", help="KEY=VALUE passed to the container."),
    registry_username: str = typer.Option(
        None, envvar="KEELHAUL_REGISTRY_USERNAME", help="Registry user (adds the login step)."
    ),
) -> None:
    """Resolve BUILD_ID and print the remote command plan. Executes nothing."""
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
        )
        reference = resolve_artifact(build_id, settings.repository_config())
        target = settings.remote_target(parse_env_pairs(env))
    except (ConfigurationError, ValidationError) as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=2) from None

    credentials = None
    if registry_username:
        credentials = RegistryCredentials(
            registry_host=reference.registry_host,
            username=registry_username,
            password=SecretStr(""),
        )

    reconciler = DeploymentReconciler(docker_binary=settings.remote_docker_binary)
    commands = reconciler.plan(reference, target, credentials)

    console.print(f"[bold]Floating:[/bold] {reference.floating_ref}")
    console.print(f"[bold]Build:[/bold]    {reference.build_ref}")
    console.print(f"[bold]Target:[/bold]   {target.ssh_destination}:{target.ssh_port}")
    console.print(plan_table(commands))
