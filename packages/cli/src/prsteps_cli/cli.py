"""CLI entry point for prsteps.

Commands:
  start       open a review session for a pull request and enqueue ingestion
  worker      run queued pipeline jobs
  regenerate  re-run one stage of a session (creator only)
  show        display a session's ordered review steps
  jobs        display the job queue
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prsteps_cli.commands.jobs import jobs_cmd
from prsteps_cli.commands.regenerate import regenerate_cmd
from prsteps_cli.commands.show import show_cmd
from prsteps_cli.commands.start import start_cmd
from prsteps_cli.commands.worker import worker_cmd
from prsteps_core.pipeline import build_pipeline

console = Console()


def _build_backends(config: dict):
    """Instantiate the configured store and job queue from .prsteps.yml settings.

      store: sqlite → SQLiteStore + SQLiteJobQueue sharing store_path (default)
      store: memory → MemoryStore + MemoryJobQueue (nothing survives the process)

    This factory lives in cli.py so neither prsteps_core nor prsteps_store
    know about the CLI config format.
    """
    store_type = config.get("store", "sqlite")

    if store_type == "memory":
        from prsteps_store.memory import MemoryJobQueue, MemoryStore

        return MemoryStore(), MemoryJobQueue()

    if store_type == "sqlite":
        from prsteps_store.sqlite import SQLiteJobQueue, SQLiteStore

        db_path = config.get("store_path", ".prsteps.db")
        return SQLiteStore(db_path=db_path), SQLiteJobQueue(db_path=db_path)

    raise click.UsageError(f"Unknown store {store_type!r}. Choose 'sqlite' or 'memory'.")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(
    version=importlib.metadata.version("prsteps"),
    prog_name="prsteps",
)
@click.option(
    "--config",
    "config_path",
    default=".prsteps.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PRSTEPS_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """Turn a pull request diff into an ordered sequence of review steps."""
    from prsteps_cli.auth import resolve_github_token
    from prsteps_core.config import load_config

    ctx.ensure_object(dict)

    config = load_config(config_path)
    _configure_logging("DEBUG" if verbose else str(config.get("log_level", "INFO")).upper())

    # Resolve token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    store, queue = _build_backends(config)
    ctx.call_on_close(store.close)
    ctx.call_on_close(queue.close)

    try:
        pipeline = build_pipeline(config, store, queue)
    except FileNotFoundError as e:
        raise click.UsageError(str(e))

    ctx.obj["config"] = config
    ctx.obj["store"] = store
    ctx.obj["queue"] = queue
    ctx.obj["pipeline"] = pipeline


main.add_command(start_cmd)
main.add_command(worker_cmd)
main.add_command(regenerate_cmd)
main.add_command(show_cmd)
main.add_command(jobs_cmd)
