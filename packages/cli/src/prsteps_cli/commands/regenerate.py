"""regenerate command: re-run one stage of a session."""

from __future__ import annotations

import click
from rich.console import Console

from prsteps_core.errors import PipelineError, RegenerationForbidden
from prsteps_core.pipeline import REGENERATE_STAGES

console = Console()


@click.command("regenerate")
@click.option("--session", "session_id", required=True, help="Review session id.")
@click.option("--stage", type=click.Choice(REGENERATE_STAGES), required=True, help="Stage to re-run.")
@click.option("--step", "step_id", default=None, help="Limit context/guidance regeneration to one step.")
@click.option("--user", default=None, help="Reviewer identity. Defaults to PRSTEPS_USER or the gh CLI login.")
@click.pass_context
def regenerate_cmd(ctx, session_id: str, stage: str, step_id: str | None, user: str | None):
    """Re-run a stage; downstream stages follow automatically.

    Only the reviewer who started the session may regenerate it.
    """
    from prsteps_cli.auth import resolve_user

    reviewer = resolve_user(user)
    if not reviewer:
        raise click.UsageError("Could not determine the reviewer. Pass --user or set PRSTEPS_USER.")

    try:
        job_ids = ctx.obj["pipeline"].regenerate(session_id, reviewer, stage, step_id=step_id)
    except RegenerationForbidden as e:
        raise click.ClickException(f"Not allowed: {e}")
    except (PipelineError, ValueError) as e:
        raise click.ClickException(str(e))

    console.print(f"[green]Enqueued {len(job_ids)} job(s) for stage '{stage}'.[/green]")
    for job_id in job_ids:
        console.print(f"  {job_id}")
