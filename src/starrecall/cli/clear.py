"""starrecall clear — wipe the local index and chat history.

Usage:
  starrecall clear
  starrecall clear --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from starrecall.cli.runtime import console, load_config_or_exit, open_store


def clear_cmd(
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
) -> None:
    """Delete every repo, chunk, embedding and chat session."""
    cfg = load_config_or_exit()
    store = open_store(cfg, db)
    try:
        repos = store.count_repositories()
        chunks = store.count_chunks()
        sessions = len(store.list_chat_sessions())
        console.print(
            f"\nClear store: [bold]{store.database.db_path or '(memory)'}[/]\n"
            f"  Repos: {repos}  |  Chunks: {chunks}  |  Chat sessions: {sessions}"
        )
        if not yes and not typer.confirm("Confirm clear?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)
        store.clear_all_data()
    finally:
        store.close()
    console.print("[green]✓[/] Store cleared.  Run:  starrecall sync  to rebuild the index.")
