"""Main Typer application — registers all CLI commands.

Entry point: ``keelhaul`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from keelhaul.cli.commands._options import load_settings
from keelhaul.cli.commands.deploy import deploy_cmd
from keelhaul.cli.commands.history import history_cmd, verify_cmd
from keelhaul.cli.commands.plan import plan_cmd

app = typer.Typer(
    name="keelhaul",
    help="Keelhaul: publish a container image and replace it on a single host.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

app.command(name="deploy", help="Publish a build and replace the running instance.")(deploy_cmd)
app.command(name="plan", help="Show the remote command plan without running it.")(plan_cmd)
app.command(name="history", help="Show recorded runs from the audit ledger.")(history_cmd)
app.command(name="verify", help="Verify a run's audit hash chain.")(verify_cmd)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Configure logging for every command."""
    level = "DEBUG" if verbose else load_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
