"""starrecall sync / embed commands.

sync:   fetch stars → READMEs → checksums → chunks → embeddings.
embed:  embed every chunk still missing a vector (resume after a partial sync).

Usage:
  starrecall sync
  starrecall sync --no-embed
  starrecall embed
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from starrecall.cli.errors import (
    err_embedding,
    err_github_auth,
    err_github_failed,
    err_github_rate_limit,
    err_no_token,
    err_queue_overflow,
    err_schema_integrity,
)
from starrecall.cli.runtime import build_pool, console, load_config_or_exit, open_store
from starrecall.db.schema import SchemaIntegrityError
from starrecall.embeddings.embedder import EmbeddingError
from starrecall.embeddings.pool import QueueOverflowError
from starrecall.github.client import GitHubAuthError, GitHubClient, GitHubError, GitHubRateLimitError
from starrecall.sync.service import EmbedSummary, SyncService, SyncSummary

_STAGES = {"plan": "Planning", "chunk": "Chunking", "embed": "Embedding"}


def sync_cmd(
    token: Annotated[
        str | None,
        typer.Option("--token", envvar="GITHUB_TOKEN", show_default=False, help="GitHub token (default: $GITHUB_TOKEN)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the store (default: storage.path)."),
    ] = None,
    no_embed: Annotated[
        bool,
        typer.Option("--no-embed", help="Chunk only; run `starrecall embed` later."),
    ] = False,
) -> None:
    """Sync starred repositories from GitHub into the local index."""
    if not token or not token.strip():
        console.print(err_no_token())
        raise typer.Exit(1)

    cfg = load_config_or_exit()
    try:
        client = GitHubClient(
            token,
            per_page=cfg.github.per_page,
            max_pages=cfg.github.max_pages,
            max_retries=cfg.github.max_retries,
            readme_concurrency=cfg.github.readme_concurrency,
        )
    except ValueError as exc:
        console.print(err_github_failed(str(exc)))
        raise typer.Exit(1)

    store = open_store(cfg, db)
    pool = build_pool(cfg)
    try:
        service = SyncService(store, client, pool, model_name=cfg.embedding.model)
        with _progress() as prog:
            summary = service.run(embed=not no_embed, progress=_on_progress(prog))
    except GitHubAuthError:
        console.print(err_github_auth())
        raise typer.Exit(1)
    except GitHubRateLimitError as exc:
        console.print(err_github_rate_limit(str(exc)))
        raise typer.Exit(1)
    except GitHubError as exc:
        console.print(err_github_failed(str(exc)))
        raise typer.Exit(1)
    except SchemaIntegrityError as exc:
        console.print(err_schema_integrity(exc.table, exc.diagnostic))
        raise typer.Exit(1)
    except QueueOverflowError as exc:
        console.print(err_queue_overflow(str(exc)))
        raise typer.Exit(1)
    finally:
        pool.terminate()
        store.close()

    _print_sync_summary(summary)


def embed_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the store (default: storage.path)."),
    ] = None,
) -> None:
    """Embed every chunk that does not have a vector yet."""
    cfg = load_config_or_exit()
    store = open_store(cfg, db)
    pool = build_pool(cfg)
    try:
        if store.count_pending_embeddings() == 0:
            console.print("[green]✓[/] Nothing to embed. Every chunk has a vector.")
            return
        service = SyncService(store, None, pool, model_name=cfg.embedding.model)
        with _progress() as prog:
            result = service.embed_pending(progress=_on_progress(prog))
    except SchemaIntegrityError as exc:
        console.print(err_schema_integrity(exc.table, exc.diagnostic))
        raise typer.Exit(1)
    except (QueueOverflowError, EmbeddingError) as exc:
        console.print(err_embedding(str(exc)))
        raise typer.Exit(1)
    finally:
        pool.terminate()
        store.close()

    _print_embed_summary(result)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    )


def _on_progress(prog: Progress):
    tasks: dict[str, int] = {}

    def update(stage: str, done: int, total: int) -> None:
        if stage not in tasks:
            tasks[stage] = prog.add_task(f"{_STAGES.get(stage, stage)}…", total=max(total, 1))
        prog.update(tasks[stage], completed=done, total=max(total, 1))

    return update


def _print_sync_summary(summary: SyncSummary) -> None:
    table = Table(title="Sync", show_header=False, box=None)
    table.add_column(style="dim")
    table.add_column(justify="right")
    table.add_row("Starred repos", f"{summary.fetched:,}")
    table.add_row("Removed", f"{summary.removed:,}")
    table.add_row("Updated", f"{summary.updated:,} / {summary.candidates:,} candidates")
    table.add_row("READMEs missing", f"{summary.readme_missing:,}")
    table.add_row("Chunks written", f"{summary.chunks_written:,}")
    table.add_row("Chunks pruned", f"{summary.chunks_pruned:,}")
    table.add_row("Embedded", f"{summary.embedded:,}")
    table.add_row("Pending embeddings", f"{summary.pending_embeddings:,}")
    console.print(table)

    if summary.readme_failed:
        console.print(
            f"[yellow]⚠[/] {summary.readme_failed} README fetches failed; "
            "those repos will be retried on the next sync."
        )
    if summary.embedding_failed:
        console.print(
            f"[yellow]⚠[/] {summary.embedding_failed} chunks failed to embed.\n"
            "  Run:  starrecall embed  to retry."
        )
    console.print("[green]✓[/] Sync complete")


def _print_embed_summary(result: EmbedSummary) -> None:
    console.print(f"[green]✓[/] Embedded {result.embedded:,} chunks")
    if result.failed:
        console.print(
            f"[yellow]⚠[/] {result.failed} chunks failed; {result.remaining} still pending.\n"
            "  Run:  starrecall embed  to retry."
        )
