"""``keelhaul history [RUN_ID]`` and ``keelhaul verify RUN_ID`` — read the audit ledger."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from keelhaul.cli.commands._options import load_settings
from keelhaul.cli.render import history_table
from keelhaul.core.run_ledger import LedgerIntegrityError, RunLedger

console = Console()


def _open_ledger(ledger_db: Path | None) -> RunLedger:
    db_path = ledger_db or load_settings().ledger_path
    if not db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)
    return RunLedger(db_path)


def history_cmd(
    run_id: str = typer.Argument(None, help="Run to show. Lists recent runs if omitted."),
    ledger_db: Path = typer.Option(None, "--ledger", "-l", help="Audit ledger database."),
    limit: int = typer.Option(20, "--limit", "-n", help="Runs to list."),
) -> None:
    """Show the stage log of one run, or list recent runs."""
    ledger = _open_ledger(ledger_db)

    if run_id is None:
        run_ids = ledger.get_all_run_ids()
        if not run_ids:
            console.print("[dim]No runs recorded.[/dim]")
            return
        for rid in run_ids[:limit]:
            latest = ledger.get_latest(rid)
            if latest is None:
                continue
            console.print(
                f"  [cyan]{rid}[/cyan]  {latest.stage}  [dim]{latest.reference}[/dim]"
            )
        return

    entries = ledger.get_run_entries(run_id)
    if not entries:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    console.print(history_table(entries, run_id))


def verify_cmd(
    run_id: str = typer.Argument(..., help="Run whose hash chain to verify."),
    ledger_db: Path = typer.Option(None, "--ledger", "-l", help="Audit ledger database."),
) -> None:
    """Verify the hash chain of a run's audit entries."""
    ledger = _open_ledger(ledger_db)
    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    try:
        ledger.verify_chain(run_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
        raise typer.Exit(code=1) from None
    console.print(f"[green]Chain valid[/green] for {run_id}")
