"""starrecall status — store, index, and embedding overview.

Reads the store only; no model is loaded and nothing is fetched.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel

from starrecall.cli.runtime import console, load_config_or_exit, open_store
from starrecall.config import StarRecallConfig
from starrecall.db.repository import IndexRepository


def status_cmd(
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
) -> None:
    """Show storage, index, and embedding status."""
    cfg = load_config_or_exit()
    db_path = db if db is not None else cfg.storage.path
    existed = db_path.exists()

    store = open_store(cfg, db_path)
    try:
        _show_storage_panel(store, db_path, existed)
        _show_index_panel(store)
        _show_embedding_panel(store, cfg)
    finally:
        store.close()


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_storage_panel(store: IndexRepository, db_path: Path, existed: bool) -> None:
    lines = [f"Mode:      {store.database.storage_mode}"]
    if existed:
        size_mb = db_path.stat().st_size / (1024 * 1024)
        lines.append(f"File:      {db_path} ({size_mb:.1f} MB)")
    else:
        lines.append(f"File:      {db_path} [yellow](new)[/]")
    last = store.get_index_meta("last_checkpoint_at")
    lines.append(f"Checkpoint: [dim]{_fmt_ms(last)}[/]")
    console.print(Panel("\n".join(lines), title="[bold]Storage[/]", expand=False))


def _show_index_panel(store: IndexRepository) -> None:
    repos = store.count_repositories()
    chunks = store.count_chunks()
    embeddings = store.count_embeddings()
    pending = store.count_pending_embeddings()
    lines = [
        f"Repos: [bold]{repos:,}[/]  |  Chunks: [bold]{chunks:,}[/]  |  Embeddings: [bold]{embeddings:,}[/]",
    ]
    if pending:
        lines.append(f"[yellow]{pending:,} chunks pending embedding[/]  Run:  starrecall embed")

    last_sync = store.get_index_meta("last_sync_at")
    if last_sync:
        lines.append(f"Last sync: [dim]{_fmt_ms(last_sync)}[/]")
        raw = store.get_index_meta("last_sync_summary")
        if raw:
            try:
                summary = json.loads(raw)
            except json.JSONDecodeError:
                summary = {}
            if summary.get("readme_failed"):
                lines.append(f"[yellow]{summary['readme_failed']} README fetches failed last sync[/]")
    else:
        lines.append("[dim]Never synced.[/]  Run:  starrecall sync")
    console.print(Panel("\n".join(lines), title="[bold]Index[/]", expand=False))


def _show_embedding_panel(store: IndexRepository, cfg: StarRecallConfig) -> None:
    e = cfg.embedding
    checkpoint = store.checkpoint_status()
    lines = [
        f"Model:     {e.model}",
        f"Backend:   {e.preferred_backend.value} (preferred)",
        f"Pool:      {e.pool_size} workers × {e.micro_batch_size} per batch, queue ≤ {e.max_queue_size:,}",
        f"Checkpoint every {checkpoint.every_embeddings} embeddings or {checkpoint.every_ms} ms",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Embedding[/]", expand=False))


def _fmt_ms(value: str | int | None) -> str:
    if value in (None, ""):
        return "never"
    try:
        stamp = int(value)
    except (TypeError, ValueError):
        return str(value)
    return datetime.fromtimestamp(stamp / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
