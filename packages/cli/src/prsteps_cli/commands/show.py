"""show command: display a session's ordered review steps."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_STATUS_STYLE = {
    "ready": "green",
    "error": "red",
    "building_context": "yellow",
    "context_building": "yellow",
}
_RISK_STYLE = {"high": "red", "medium": "yellow", "low": "green", "unknown": "dim"}


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def print_session(store, session_id: str) -> None:
    session = store.get_session(session_id)
    if session is None:
        raise click.UsageError(f"Session {session_id} not found.")
    pr = store.get_pull_request(session.pull_request_id)
    label = f"{pr.repo_id}#{pr.number}" if pr else session.pull_request_id

    console.print(f"\n[bold]Session {session.id}[/bold]  {label}  {_styled(session.status, _STATUS_STYLE)}")
    if pr and pr.title:
        console.print(f"  {pr.title}")
    if session.error_reason:
        console.print(f"  [red]Reason: {session.error_reason}[/red]")
    if session.is_stale:
        console.print("  [yellow]Stale: the pull request has new commits. Start a new session.[/yellow]")

    steps = store.list_steps(session.id)
    if not steps:
        console.print("[yellow]No review steps.[/yellow]")
        return

    table = Table(title="Review Steps", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", width=4)
    table.add_column("Title", max_width=50)
    table.add_column("Category", width=12)
    table.add_column("Size", width=4)
    table.add_column("Lines", justify="right", width=6)
    table.add_column("Status", width=16)
    table.add_column("Risk", width=8)

    for step in steps:
        guidance = store.get_guidance(step.id)
        risk = _styled(guidance.risk_level, _RISK_STYLE) if guidance else ""
        title = step.title + (f" [dim]({', '.join(step.risk_tags)})[/dim]" if step.risk_tags else "")
        table.add_row(
            str(step.order_index + 1),
            title,
            step.category,
            step.complexity,
            str(step.changed_lines),
            _styled(step.status, _STATUS_STYLE),
            risk,
        )
    console.print(table)

    wrap_up = store.get_guidance(session.id)
    if wrap_up is not None:
        console.print(f"\n[bold]Wrap-up[/bold] ({_styled(wrap_up.risk_level, _RISK_STYLE)}): {wrap_up.summary}")
        for change in wrap_up.key_changes:
            console.print(f"  • {change}")


@click.command("show")
@click.option("--session", "session_id", required=True, help="Review session id.")
@click.pass_context
def show_cmd(ctx, session_id: str):
    """Show a review session: status, ordered steps and guidance risk."""
    print_session(ctx.obj["store"], session_id)
