"""Embedding worker CLI commands.

This module provides CLI commands for running the embedding worker pool and
for inspecting its configuration together with the queue it serves.
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Annotated

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from contextlens.pipeline.worker import EmbeddingWorker, WorkerStatus

app = typer.Typer(help="Embedding worker commands")
console = Console()


@app.command()
def run(
    once: Annotated[
        bool,
        typer.Option("--once", help="Process a single batch and exit"),
    ] = False,
) -> None:
    """Run the embedding worker pool until interrupted.

    Claims pending jobs, embeds them with the configured backend chain and
    stores the vectors. Ctrl+C or SIGTERM stops claiming and waits for
    in-flight jobs up to the configured shutdown timeout.
    """
    from contextlens.main import get_app_context

    ctx = get_app_context()
    worker_config = ctx.config.worker

    console.print()
    console.print(
        Panel(
            f"[bold cyan]contextlens Embedding Worker[/bold cyan]\n\n"
            f"[bold]Model:[/bold] {ctx.config.embedding.model}\n"
            f"[bold]Backends:[/bold] {', '.join(ctx.config.embedding.backends)}\n"
            f"[bold]Max Concurrency:[/bold] {worker_config.max_concurrency}\n"
            f"[bold]Batch Size:[/bold] {worker_config.batch_size}\n"
            f"[bold]Poll Interval:[/bold] {worker_config.poll_interval_seconds} seconds",
            title="Starting Worker",
            border_style="cyan",
        )
    )

    async def run_once():
        async with ctx.provider() as provider:
            worker = EmbeddingWorker(
                queue=ctx.job_queue(),
                content_store=ctx.catalog(),
                provider=provider,
                config=worker_config,
            )
            processed = await worker.run_cycle()
            return processed, await worker.status()

    if once:
        try:
            processed, status = ctx.run(run_once())
        except Exception as e:
            console.print(f"[red]Worker error:[/red] {e}")
            raise typer.Exit(code=1)
        console.print(f"[green]Processed {processed} job(s)[/green]")
        console.print(generate_status_table(status))
        return

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        console.print()
        console.print("[yellow]Shutdown signal received. Stopping worker...[/yellow]")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def run_worker():
        async with ctx.provider() as provider:
            worker = EmbeddingWorker(
                queue=ctx.job_queue(),
                content_store=ctx.catalog(),
                provider=provider,
                config=worker_config,
            )
            try:
                await worker.start()
                console.print("[bold green]Worker running[/bold green]")
                console.print("[dim]Press Ctrl+C to stop[/dim]")
                console.print()

                with Live(
                    generate_status_table(await worker.status()), refresh_per_second=1
                ) as live:
                    while not shutdown_event.is_set():
                        await asyncio.sleep(1.0)
                        live.update(generate_status_table(await worker.status()))
            finally:
                await worker.stop()
                console.print()
                console.print("[green]Worker stopped[/green]")

    try:
        ctx.run(run_worker())
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def status(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show worker configuration and queue statistics."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    worker_config = ctx.config.worker

    try:
        stats = ctx.run(ctx.job_queue().stats())
    except Exception as e:
        console.print(f"[red]Error reading queue statistics:[/red] {e}")
        raise typer.Exit(code=1)

    status = WorkerStatus(
        running=False,
        in_flight=stats.processing,
        max_concurrency=worker_config.max_concurrency,
        batch_size=worker_config.batch_size,
        poll_interval_ms=worker_config.poll_interval_ms,
        queue=stats,
    )

    if format == "json":
        console.print(json.dumps(status.model_dump(), indent=2))
    else:
        console.print(generate_status_table(status))


def generate_status_table(status: WorkerStatus) -> Table:
    """Generate a status table for the worker.

    Args:
        status: Worker status snapshot

    Returns:
        Rich Table with current worker and queue status
    """
    table = Table(title="Embedding Worker", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")

    state = "[green]Running[/green]" if status.running else "[dim]Stopped[/dim]"
    table.add_row("Status", state)
    table.add_row("In Flight", f"{status.in_flight}/{status.max_concurrency}")
    table.add_row("Batch Size", str(status.batch_size))
    table.add_row("Poll Interval", f"{status.poll_interval_ms}ms")
    table.add_row("Pending", str(status.queue.pending))
    table.add_row("Processing", str(status.queue.processing))
    table.add_row("Completed", str(status.queue.completed))
    table.add_row("Failed", str(status.queue.failed))

    return table
