"""start command: open a review session for a pull request."""

from __future__ import annotations

import click
from rich.console import Console

from prsteps_cli.commands.show import print_session
from prsteps_core.errors import PipelineError

console = Console()


@click.command("start")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option("--user", default=None, help="Reviewer identity. Defaults to PRSTEPS_USER or the gh CLI login.")
@click.option("--wait", is_flag=True, help="Run the pipeline in this process until the session is processed.")
@click.pass_context
def start_cmd(ctx, repo: str, pr_number: int, user: str | None, wait: bool):
    """Open a review session and enqueue ingestion of the pull request diff.

    Without --wait the jobs stay queued for `prsteps worker`.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub personal access token (or use gh CLI)
      ANTHROPIC_API_KEY    Required when model is anthropic
      OPENAI_API_KEY       Required when model is openai
    """
    from prsteps_cli.auth import resolve_user

    config = ctx.obj["config"]
    if not config.get("github_token"):
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )
    if wait:
        if config["model"] == "anthropic" and not config.get("anthropic_api_key"):
            raise click.UsageError("ANTHROPIC_API_KEY environment variable is not set.")
        if config["model"] == "openai" and not config.get("openai_api_key"):
            raise click.UsageError("OPENAI_API_KEY environment variable is not set.")

    reviewer = resolve_user(user)
    if not reviewer:
        raise click.UsageError("Could not determine the reviewer. Pass --user or set PRSTEPS_USER.")

    pipeline = ctx.obj["pipeline"]
    try:
        session = pipeline.start_session(repo, pr_number, reviewer)
    except PipelineError as e:
        raise click.ClickException(str(e))
    console.print(f"[green]Started session {session.id}[/green] for {repo}#{pr_number}.")

    if not wait:
        console.print("[dim]Run `prsteps worker` to process it.[/dim]")
        return

    pipeline.run_until_idle()
    print_session(ctx.obj["store"], session.id)
