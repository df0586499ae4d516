"""starrecall init — create the global config and an empty store.

Creates:
  ~/.starrecall/config.yaml   — global config (created once, mode 0o600)
  <storage.path>              — empty index with schema

Usage:
  starrecall init
  starrecall init --db ./stars.db
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from starrecall.cli.runtime import console, load_config_or_exit, open_store
from starrecall.config import ensure_global_config


def init_cmd(
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
) -> None:
    """Create the global config file and an empty index."""
    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    cfg = load_config_or_exit()
    db_path = db if db is not None else cfg.storage.path
    existed = db_path.exists()
    store = open_store(cfg, db_path)
    try:
        store.flush_checkpoint()
    finally:
        store.close()
    if existed:
        console.print(f"  [green]✓[/] {db_path} (existing store kept)")
    else:
        console.print(f"  [green]✓[/] {db_path} (new store)")

    console.print("\nNext steps:")
    console.print("  1. export GITHUB_TOKEN=ghp_...        (read access to your stars)")
    console.print("  2. starrecall sync                    (index stars and READMEs)")
    console.print("  3. starrecall search \"<query>\"        (find a repo)")
