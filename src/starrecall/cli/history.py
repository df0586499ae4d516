"""starrecall history — browse saved chat sessions.

Usage:
  starrecall history                 list recent sessions
  starrecall history <session-id>    show one conversation
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from starrecall.cli.errors import err_session_not_found
from starrecall.cli.runtime import console, load_config_or_exit, open_store

_ROLE_STYLE = {"user": "bold cyan", "assistant": "green", "system": "dim"}


def history_cmd(
    session_id: Annotated[
        str | None,
        typer.Argument(help="Session to show; omit to list sessions."),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Sessions to list.")] = 20,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
) -> None:
    """List chat sessions, or show the messages of one session."""
    cfg = load_config_or_exit()
    store = open_store(cfg, db)
    try:
        if session_id is None:
            sessions = store.list_chat_sessions(limit=limit)
            if not sessions:
                console.print("[dim]No chat sessions yet.[/]  Run:  starrecall ask \"...\"")
                return
            table = Table(title="Chat sessions")
            table.add_column("Session", style="bold")
            table.add_column("Query", overflow="fold")
            table.add_column("Updated", style="dim")
            for session in sessions:
                table.add_row(session.id, session.query or "-", _fmt_ms(session.updated_at))
            console.print(table)
            return

        session = store.get_chat_session(session_id)
        if session is None:
            console.print(err_session_not_found(session_id))
            raise typer.Exit(1)
        messages = store.list_chat_messages(session_id)
    finally:
        store.close()

    console.print(f"[bold]Session {session.id}[/]  [dim]{_fmt_ms(session.created_at)}[/]")
    if not messages:
        console.print("[dim]No messages.[/]")
    for message in messages:
        style = _ROLE_STYLE.get(message.role, "")
        console.print(
            Panel(
                message.content,
                title=f"[{style}]{message.role}[/] #{message.sequence}",
                title_align="left",
                expand=False,
            )
        )


def _fmt_ms(value: int) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
