"""Embedding job queue CLI commands.

This module provides CLI commands for inspecting the queue and for the
administrative operations: retry, remove, clear, purge and stale recovery.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from contextlens.database.models.job import JobStatus

app = typer.Typer(help="Embedding job queue commands")
console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
}


def _parse_uuid(value: str, label: str = "job") -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} UUID:[/red] {value}")
        raise typer.Exit(code=1)


@app.command()
def status(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show job counts by status."""
    from contextlens.main import get_app_context

    ctx = get_app_context()

    try:
        stats = ctx.run(ctx.job_queue().stats())
    except Exception as e:
        console.print(f"[red]Error reading queue statistics:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        console.print(json.dumps(stats.model_dump(), indent=2))
        return

    table = Table(title="Embedding Queue")
    table.add_column("Status", style="bold")
    table.add_column("Jobs", justify="right")
    for name, color in STATUS_COLORS.items():
        table.add_row(f"[{color}]{name}[/{color}]", str(getattr(stats, name)))
    table.add_row("[bold]total[/bold]", str(stats.total))
    table.add_row("[dim]avg retries[/dim]", f"{stats.avg_retry_count:.2f}")
    console.print(table)


@app.command("list")
def list_jobs(
    status: Annotated[
        Optional[str],
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (pending, processing, completed, failed)",
        ),
    ] = None,
    resource_id: Annotated[
        Optional[str],
        typer.Option("--resource", "-r", help="Filter by resource UUID"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of jobs to show"),
    ] = 50,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List jobs in claim order."""
    from contextlens.main import get_app_context

    ctx = get_app_context()

    status_filter = None
    if status is not None:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            console.print(
                f"[red]Invalid status:[/red] {status}. "
                f"Valid values: {', '.join(s.value for s in JobStatus)}"
            )
            raise typer.Exit(code=1)

    resource_uuid = _parse_uuid(resource_id, "resource") if resource_id else None

    try:
        jobs = ctx.run(
            ctx.job_queue().list_jobs(
                status=status_filter, resource_id=resource_uuid, limit=limit
            )
        )
    except Exception as e:
        console.print(f"[red]Error listing jobs:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        output = [
            {
                "id": str(j.id),
                "resource_type": j.resource_type.value,
                "resource_id": str(j.resource_id),
                "priority": j.priority,
                "status": j.status.value,
                "retry_count": j.retry_count,
                "error_message": j.error_message,
                "created_at": j.created_at.isoformat(),
            }
            for j in jobs
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title="Embedding Jobs")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Resource", style="bold")
    table.add_column("Status")
    table.add_column("Priority", justify="right", style="dim")
    table.add_column("Retries", justify="right")
    table.add_column("Error", style="dim", overflow="fold")

    for j in jobs:
        color = STATUS_COLORS.get(j.status.value, "white")
        table.add_row(
            str(j.id),
            f"{j.resource_type.value}:{str(j.resource_id)[:8]}",
            f"[{color}]{j.status.value}[/{color}]",
            str(j.priority),
            str(j.retry_count),
            j.error_message or "-",
        )

    console.print(table)


@app.command()
def retry(
    job_id: Annotated[str, typer.Argument(help="UUID of a failed job")],
) -> None:
    """Queue a new attempt for a failed job."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    job_uuid = _parse_uuid(job_id)

    try:
        new_id = ctx.run(ctx.job_queue().retry(job_uuid))
    except ValueError as e:
        console.print(f"[red]Cannot retry:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error retrying job:[/red] {e}")
        raise typer.Exit(code=1)

    if new_id is None:
        console.print("[yellow]Resource already has a pending job; nothing queued[/yellow]")
    else:
        console.print(f"[green]Queued retry[/green] {new_id}")


@app.command()
def remove(
    job_id: Annotated[str, typer.Argument(help="Job UUID")],
) -> None:
    """Delete a job that is not being processed."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    job_uuid = _parse_uuid(job_id)

    try:
        removed = ctx.run(ctx.job_queue().remove(job_uuid))
    except ValueError as e:
        console.print(f"[red]Cannot remove:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error removing job:[/red] {e}")
        raise typer.Exit(code=1)

    if not removed:
        console.print(f"[yellow]Job not found:[/yellow] {job_uuid}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] {job_uuid}")


@app.command()
def clear(
    status: Annotated[
        str,
        typer.Option("--status", "-s", help="Terminal status to clear (completed or failed)"),
    ],
) -> None:
    """Delete all completed or all failed jobs."""
    from contextlens.main import get_app_context

    ctx = get_app_context()

    try:
        status_filter = JobStatus(status)
    except ValueError:
        console.print(f"[red]Invalid status:[/red] {status}")
        raise typer.Exit(code=1)

    try:
        count = ctx.run(ctx.job_queue().clear(status_filter))
    except ValueError as e:
        console.print(f"[red]Cannot clear:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error clearing jobs:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Cleared {count} {status_filter.value} job(s)[/green]")


@app.command()
def purge(
    days: Annotated[
        Optional[int],
        typer.Option("--days", "-d", help="Retention in days (defaults to worker.retention_days)"),
    ] = None,
) -> None:
    """Delete terminal jobs older than the retention period."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    retention = days if days is not None else ctx.config.worker.retention_days

    try:
        count = ctx.run(ctx.job_queue().purge(retention))
    except Exception as e:
        console.print(f"[red]Error purging jobs:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Purged {count} job(s) finished more than {retention} day(s) ago[/green]")


@app.command()
def recover(
    stale_seconds: Annotated[
        Optional[int],
        typer.Option(
            "--stale-seconds",
            help="Processing age after which a job counts as abandoned",
        ),
    ] = None,
) -> None:
    """Requeue (or fail) jobs abandoned in processing."""
    from contextlens.main import get_app_context

    ctx = get_app_context()
    worker_config = ctx.config.worker
    stale_after = timedelta(
        seconds=stale_seconds if stale_seconds is not None else worker_config.stale_after_seconds
    )

    try:
        jobs = ctx.run(
            ctx.job_queue().recover_stale(stale_after, max_retries=worker_config.max_retries)
        )
    except Exception as e:
        console.print(f"[red]Error recovering jobs:[/red] {e}")
        raise typer.Exit(code=1)

    if not jobs:
        console.print("[dim]No stale jobs[/dim]")
        return
    for job in jobs:
        color = STATUS_COLORS.get(job.status.value, "white")
        console.print(f"{job.id} -> [{color}]{job.status.value}[/{color}]")
