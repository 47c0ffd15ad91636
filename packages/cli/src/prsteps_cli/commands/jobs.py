"""jobs command: display the job queue."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from prsteps_store.models import JOB_STATUSES

console = Console()

_STATUS_STYLE = {"queued": "cyan", "active": "yellow", "completed": "green", "failed": "red"}


@click.command("jobs")
@click.option("--status", type=click.Choice(JOB_STATUSES), default=None, help="Only show jobs in this state.")
@click.option("--limit", default=50, show_default=True, help="Maximum number of jobs to show.")
@click.pass_context
def jobs_cmd(ctx, status: str | None, limit: int):
    """Show queued, running, completed and failed pipeline jobs."""
    queue = ctx.obj["queue"]

    counts = queue.counts()
    console.print("  ".join(f"{s}: [bold]{counts.get(s, 0)}[/bold]" for s in JOB_STATUSES))

    jobs = queue.list_jobs(status)
    if not jobs:
        console.print("[yellow]No jobs found.[/yellow]")
        return

    # Most recent first, capped at --limit.
    jobs = list(reversed(jobs))[:limit]

    table = Table(title="Jobs", show_header=True, header_style="bold cyan")
    table.add_column("Id", width=8)
    table.add_column("Type", width=20)
    table.add_column("Target", max_width=24)
    table.add_column("Status", width=10)
    table.add_column("Attempts", justify="right", width=8)
    table.add_column("Last error", max_width=50)

    for job in jobs:
        target = job.payload.get("stepId") or job.payload.get("sessionId") or job.payload.get("repoId", "")
        style = _STATUS_STYLE.get(job.status, "white")
        table.add_row(
            job.id[:8],
            job.type,
            str(target)[:24],
            f"[{style}]{job.status}[/{style}]",
            str(job.attempts),
            (job.last_error or "")[:50],
        )
    console.print(table)
