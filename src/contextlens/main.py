"""Main CLI entry point for contextlens.

This module provides the main Typer application with sub-commands for
running the embedding worker, administering the job queue and embedding
individual resources.

Usage:
    contextlens worker run
    contextlens queue status
    contextlens queue retry <job-id>
    contextlens embed enqueue context <resource-id> --priority 2
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from pathlib import Path
from typing import Annotated, Any, Optional, TypeVar

import typer
from rich.console import Console

from contextlens.cli import embed as embed_cli
from contextlens.cli import queue as queue_cli
from contextlens.cli import worker as worker_cli
from contextlens.config import ContextlensConfig, load_config
from contextlens.database.connection import get_engine, get_session_factory
from contextlens.embeddings.provider import EmbeddingProvider
from contextlens.logging import setup_logging
from contextlens.pipeline.queue import JobQueue
from contextlens.retrieval.sql_catalog import SqlCatalog

app = typer.Typer(
    name="contextlens",
    help="contextlens: embedding pipeline and semantic retrieval",
    no_args_is_help=True,
)

app.add_typer(worker_cli.app, name="worker", help="Run and inspect the embedding worker")
app.add_typer(queue_cli.app, name="queue", help="Administer the embedding job queue")
app.add_typer(embed_cli.app, name="embed", help="Embed individual resources")

console = Console()

T = TypeVar("T")


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded contextlens configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: ContextlensConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)

    def job_queue(self) -> JobQueue:
        """Job queue bound to the configured embedding model."""
        return JobQueue(self.session_factory, model=self.config.embedding.model)

    def catalog(self) -> SqlCatalog:
        """Content store tables on the same database."""
        return SqlCatalog(self.session_factory)

    def provider(self) -> EmbeddingProvider:
        """Embedding provider with the configured backend chain.

        Must be entered with ``async with`` before use.
        """
        return EmbeddingProvider.from_config(self.config)

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a coroutine to completion on a fresh event loop.

        Pooled connections are bound to the loop, so the engine is disposed
        before the loop closes.
        """

        async def _run() -> T:
            try:
                return await coro
            finally:
                await self.engine.dispose()

        return asyncio.run(_run())


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: ContextlensConfig) -> AppContext:
    """Initialize the global application context.

    Args:
        config: contextlens configuration

    Returns:
        Initialized AppContext instance
    """
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
