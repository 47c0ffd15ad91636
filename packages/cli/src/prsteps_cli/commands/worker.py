"""worker command: run queued pipeline jobs."""

from __future__ import annotations

import threading

import click
from rich.console import Console

console = Console()


@click.command("worker")
@click.option("--workers", type=int, default=None, help="Worker threads. Overrides config file.")
@click.option("--once", is_flag=True, help="Drain the queue in this thread and exit.")
@click.pass_context
def worker_cmd(ctx, workers: int | None, once: bool):
    """Process pipeline jobs from the queue until interrupted."""
    pipeline = ctx.obj["pipeline"]

    if once:
        pipeline.run_until_idle()
        counts = ctx.obj["queue"].counts()
        console.print(
            f"[green]Queue drained.[/green] {counts.get('completed', 0)} completed, {counts.get('failed', 0)} failed."
        )
        return

    pool = pipeline.worker_pool(workers)
    pool.start()
    console.print(f"[green]{pool.workers} worker(s) running.[/green] Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping workers...[/yellow]")
    finally:
        pool.stop()
