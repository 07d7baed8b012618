"""Rich rendering of pipeline results and ledger history.

Color scheme
------------
- green     : succeeded / stage passed
- red       : failed
- bold red  : degraded (service down)
- yellow    : cancelled
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from keelhaul.models.commands import DeploymentCommand, FailurePolicy
from keelhaul.models.ledger import LedgerEntry
from keelhaul.models.results import PipelineOutcome, PipelineResult, StageRecord

_OUTCOME_STYLES: dict[PipelineOutcome, str] = {
    PipelineOutcome.SUCCEEDED: "bold green",
    PipelineOutcome.FAILED: "red",
    PipelineOutcome.DEGRADED: "bold red",
    PipelineOutcome.CANCELLED: "yellow",
}

_OUTCOME_NOTES: dict[PipelineOutcome, str] = {
    PipelineOutcome.SUCCEEDED: "Deployment converged.",
    PipelineOutcome.FAILED: "Nothing changed on the target. Safe to re-run.",
    PipelineOutcome.DEGRADED: (
        "SERVICE DOWN: the previous instance was removed and the new one is "
        "not running. Manual intervention required."
    ),
    PipelineOutcome.CANCELLED: "Target state is unspecified. Verify manually.",
}


def _ok(success: bool) -> str:
    return "[green]OK[/green]" if success else "[bold red]FAIL[/bold red]"


def stage_table(records: list[StageRecord], title: str = "Stages") -> Table:
    table = Table(title=title)
    table.add_column("Stage", style="cyan")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Result", justify="center")
    table.add_column("Error")
    for rec in records:
        table.add_row(
            rec.stage.value,
            rec.started_at.strftime("%H:%M:%S"),
            f"{rec.duration_seconds:.1f}s",
            _ok(rec.success),
            rec.error_type or "",
        )
    return table


def print_result(console: Console, result: PipelineResult) -> None:
    style = _OUTCOME_STYLES[result.outcome]
    lines = [
        f"[{style}]{result.outcome.value.upper()}[/{style}]  "
        f"[dim]{_OUTCOME_NOTES[result.outcome]}[/dim]",
        "",
        f"[bold]Run ID:[/bold]        {result.run_id}",
        f"[bold]Stage reached:[/bold] {result.stage_reached.value}",
    ]
    if result.artifact is not None:
        lines.append(f"[bold]Reference:[/bold]     {result.artifact.floating_ref}")
        lines.append(f"[bold]Build:[/bold]         {result.artifact.build_ref}")
    if result.publish is not None:
        lines.append(
            f"[bold]Digest:[/bold]        {result.publish.digest or 'unknown'} "
            f"[dim](retries: {result.publish.retry_count})[/dim]"
        )
    if result.reconcile is not None:
        lines.append(
            f"[bold]Container:[/bold]     {result.reconcile.service_name} "
            f"{(result.reconcile.container_id or '')[:12]}"
        )
    if result.error_detail:
        lines += ["", f"[{style}]{result.error_detail}[/{style}]"]

    console.print(Panel("\n".join(lines), title="[bold]Keelhaul[/bold]", border_style=style))
    console.print(stage_table(result.stage_log))


def plan_table(commands: list[DeploymentCommand]) -> Table:
    table = Table(title="Remote plan")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("Command")
    table.add_column("Policy")
    for i, cmd in enumerate(commands, start=1):
        policy = (
            "[yellow]tolerate absence[/yellow]"
            if cmd.failure_policy == FailurePolicy.TOLERATE_ABSENCE
            else "fatal"
        )
        invocation = escape(cmd.shell_invocation)
        if cmd.stdin is not None:
            invocation += " [dim]< ********[/dim]"
        table.add_row(str(i), cmd.step.value, invocation, policy)
    return table


def history_table(entries: list[LedgerEntry], run_id: str) -> Table:
    table = Table(title=f"Run {run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Started")
    table.add_column("Finished")
    table.add_column("Result", justify="center")
    table.add_column("Error")
    table.add_column("Hash", style="dim")
    for entry in entries:
        table.add_row(
            entry.stage,
            entry.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.finished_at.strftime("%H:%M:%S"),
            _ok(entry.success),
            entry.error_type,
            entry.entry_hash[:12],
        )
    return table
