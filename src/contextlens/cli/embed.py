"""Embedding CLI commands.

This module provides CLI commands for queueing re-embeds, embedding a
resource immediately and checking embedding backend health.
"""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from contextlens.database.models.job import ResourceType
from contextlens.database.queries.queue import DEFAULT_PRIORITY
from contextlens.errors import EmbeddingPipelineError
from contextlens.pipeline.enqueuer import Enqueuer
from contextlens.pipeline.worker import EmbeddingWorker

app = typer.Typer(help="Embedding commands")
console = Console()


def _parse_resource(resource_type: str, resource_id: str) -> tuple[ResourceType, UUID]:
    try:
        rtype = ResourceType(resource_type)
    except ValueError:
        console.print(
            f"[red]Invalid resource type:[/red] {resource_type}. "
            f"Valid values: {', '.join(t.value for t in ResourceType)}"
        )
        raise typer.Exit(code=1)
    try:
        return rtype, UUID(resource_id)
    except ValueError:
        console.print(f"[red]Invalid resource UUID:[/red] {resource_id}")
        raise typer.Exit(code=1)


@app.command()
def enqueue(
    resource_type: Annotated[str, typer.Argument(help="Resource type (context or template)")],
    resource_id: Annotated[str, typer.Argument(help="Resource UUID")],
    priority: Annotated[
        int,
        typer.Option("--priority", "-p", help="Job priority, 1 (highest) to 10"),
    ] = DEFAULT_PRIORITY,
) -> None:
    """Queue a re-embed of one resource."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    rtype, rid = _parse_resource(resource_type, resource_id)

    try:
        queued = ctx.run(Enqueuer(ctx.job_queue()).enqueue_reembed(rtype, rid, priority))
    except ValueError as e:
        console.print(f"[red]Invalid request:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error enqueueing job:[/red] {e}")
        raise typer.Exit(code=1)

    if queued:
        console.print(f"[green]Queued[/green] {rtype.value} {rid} (priority {priority})")
    else:
        console.print(f"[yellow]{rtype.value} {rid} already has a pending job[/yellow]")


@app.command()
def now(
    resource_type: Annotated[str, typer.Argument(help="Resource type (context or template)")],
    resource_id: Annotated[str, typer.Argument(help="Resource UUID")],
) -> None:
    """Embed one resource immediately, bypassing the queue."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    rtype, rid = _parse_resource(resource_type, resource_id)

    async def _embed():
        async with ctx.provider() as provider:
            worker = EmbeddingWorker(
                queue=ctx.job_queue(),
                content_store=ctx.catalog(),
                provider=provider,
                config=ctx.config.worker,
            )
            return await worker.reembed_now(rtype, rid)

    try:
        record = ctx.run(_embed())
    except EmbeddingPipelineError as e:
        console.print(f"[red]Embedding failed:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error embedding resource:[/red] {e}")
        raise typer.Exit(code=1)

    metadata = record.generation_metadata or {}
    panel = Panel(
        f"[bold]Resource:[/bold] {record.resource_type.value} {record.resource_id}\n"
        f"[bold]Model:[/bold] {record.model}\n"
        f"[bold]Backend:[/bold] {metadata.get('backend', '-')}\n"
        f"[bold]Dimension:[/bold] {metadata.get('dimension', '-')}\n"
        f"[bold]Content hash:[/bold] {record.content_hash[:16]}",
        title="Embedding Stored",
        border_style="green",
    )
    console.print(panel)


@app.command()
def providers() -> None:
    """Check the health of each configured embedding backend."""
    from contextlens.main import get_app_context

    ctx = get_app_context()

    async def _health():
        async with ctx.provider() as provider:
            return await provider.health()

    try:
        health = ctx.run(_health())
    except Exception as e:
        console.print(f"[red]Error checking providers:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title="Embedding Backends")
    table.add_column("Order", justify="right", style="dim")
    table.add_column("Backend", style="bold")
    table.add_column("Status")
    for order, (name, healthy) in enumerate(health.items(), start=1):
        status = "[green]healthy[/green]" if healthy else "[red]unavailable[/red]"
        table.add_row(str(order), name, status)
    console.print(table)

    if not any(health.values()):
        raise typer.Exit(code=1)


@app.command()
def stale(
    resource_type: Annotated[str, typer.Argument(help="Resource type (context or template)")],
    priority: Annotated[
        int,
        typer.Option("--priority", "-p", help="Job priority, 1 (highest) to 10"),
    ] = DEFAULT_PRIORITY,
) -> None:
    """Queue every live resource whose embedding is missing or outdated."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    try:
        rtype = ResourceType(resource_type)
    except ValueError:
        console.print(f"[red]Invalid resource type:[/red] {resource_type}")
        raise typer.Exit(code=1)

    async def _enqueue_stale():
        items = await ctx.catalog().list_items(rtype)
        resources = {item.id: item.text() for item in items if not item.is_deleted}
        return await Enqueuer(ctx.job_queue()).enqueue_stale(rtype, resources, priority)

    try:
        enqueued = ctx.run(_enqueue_stale())
    except ValueError as e:
        console.print(f"[red]Invalid request:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error enqueueing stale resources:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Queued {len(enqueued)} stale {rtype.value}(s)[/green]")
