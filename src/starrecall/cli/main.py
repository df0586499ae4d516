"""starrecall CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from starrecall.cli.clear import clear_cmd
from starrecall.cli.history import history_cmd
from starrecall.cli.init import init_cmd
from starrecall.cli.runtime import load_config_or_exit
from starrecall.cli.search import ask_cmd, search_cmd
from starrecall.cli.status import status_cmd
from starrecall.cli.sync import embed_cmd, sync_cmd
from starrecall.logging import DEFAULT_LOG_DIR, configure_logging


def _version() -> str:
    try:
        return importlib.metadata.version("starrecall")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"starrecall {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="starrecall",
    help=(
        "starrecall — semantic search over your GitHub stars.\n\n"
        "  starrecall sync    Index starred repos and their READMEs locally.\n"
        "  starrecall search  Rank your stars against a query.\n"
        "  starrecall ask     Answer a question from your stars."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level."),
    ] = False,
) -> None:
    """starrecall — semantic search over your GitHub stars."""
    cfg = load_config_or_exit()
    configure_logging(
        level="DEBUG" if verbose else cfg.logging.level,
        log_dir=DEFAULT_LOG_DIR if cfg.logging.file else None,
    )


app.command("init")(init_cmd)
app.command("sync")(sync_cmd)
app.command("embed")(embed_cmd)
app.command("search")(search_cmd)
app.command("ask")(ask_cmd)
app.command("history")(history_cmd)
app.command("status")(status_cmd)
app.command("clear")(clear_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed starrecall version."""
    typer.echo(f"starrecall {_version()}")


if __name__ == "__main__":
    app()
