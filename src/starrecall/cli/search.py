"""starrecall search / ask commands.

search:  rank starred repos against a free-text query.
ask:     answer a question from the top-ranked snippets and save the chat.

Usage:
  starrecall search "vector database in rust" --language rust
  starrecall ask "which of my stars does OCR?" --session <id>
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from starrecall.cli.errors import (
    err_embedding,
    err_empty_index,
    err_no_api_key,
    err_schema_integrity,
    warn_no_results,
)
from starrecall.cli.runtime import build_pool, console, load_config_or_exit, open_store
from starrecall.db.schema import SchemaIntegrityError
from starrecall.embeddings.embedder import EmbeddingError
from starrecall.rag.answer import AnswerService, NoContextError
from starrecall.rag.llm_client import validate_api_key
from starrecall.rag.retriever import DEFAULT_TOP_K, SearchFilters, retrieve

_SNIPPET_CHARS = 160


def search_cmd(
    query: Annotated[str, typer.Argument(help="What you are looking for.")],
    top_k: Annotated[int, typer.Option("--top-k", "-k", min=1, help="Number of results.")] = DEFAULT_TOP_K,
    language: Annotated[str | None, typer.Option("--language", help="Only repos in this language.")] = None,
    topic: Annotated[str | None, typer.Option("--topic", help="Only repos tagged with this topic.")] = None,
    updated_within: Annotated[
        int | None,
        typer.Option("--updated-within", min=1, help="Only repos updated in the last N days."),
    ] = None,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
) -> None:
    """Search your starred repositories."""
    cfg = load_config_or_exit()
    filters = SearchFilters(language=language, topic=topic, updated_within_days=updated_within)
    store = open_store(cfg, db)
    pool = build_pool(cfg)
    try:
        if store.count_embeddings() == 0:
            console.print(err_empty_index())
            raise typer.Exit(0)
        results = retrieve(query, store, pool, k=top_k, filters=filters)
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)
    except EmbeddingError as exc:
        console.print(err_embedding(str(exc)))
        raise typer.Exit(1)
    finally:
        pool.terminate()
        store.close()

    if not results:
        console.print(warn_no_results(query))
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Repository", style="bold")
    table.add_column("Language")
    table.add_column("Snippet", overflow="fold")
    for rank, result in enumerate(results, start=1):
        snippet = " ".join(result.text.split())
        if len(snippet) > _SNIPPET_CHARS:
            snippet = snippet[: _SNIPPET_CHARS - 1] + "…"
        table.add_row(
            str(rank),
            f"{result.score:.3f}",
            f"{result.repo_full_name}\n[dim]{result.repo_url}[/]",
            result.language or "-",
            snippet,
        )
    console.print(table)


def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question about your starred repositories.")],
    session: Annotated[
        str | None,
        typer.Option("--session", "-s", help="Continue an existing chat session."),
    ] = None,
    top_k: Annotated[int, typer.Option("--top-k", "-k", min=1, help="Results retrieved as context.")] = DEFAULT_TOP_K,
    language: Annotated[str | None, typer.Option("--language", help="Only repos in this language.")] = None,
    topic: Annotated[str | None, typer.Option("--topic", help="Only repos tagged with this topic.")] = None,
    updated_within: Annotated[
        int | None,
        typer.Option("--updated-within", min=1, help="Only repos updated in the last N days."),
    ] = None,
    model: Annotated[str | None, typer.Option("--model", help="Override generation.model.")] = None,
    no_stream: Annotated[bool, typer.Option("--no-stream", help="Print the answer in one piece.")] = False,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the store (default: storage.path).")] = None,
) -> None:
    """Ask a question answered from your starred repositories."""
    cfg = load_config_or_exit()
    gen = cfg.generation
    model_name = model or gen.model
    filters = SearchFilters(language=language, topic=topic, updated_within_days=updated_within)

    try:
        validate_api_key(model_name, gen.api_base)
    except EnvironmentError:
        console.print(err_no_api_key(model_name))
        raise typer.Exit(1)

    store = open_store(cfg, db)
    pool = build_pool(cfg)
    try:
        service = AnswerService(
            store,
            pool,
            model_name,
            api_base=gen.api_base,
            max_context_snippets=gen.max_context_snippets,
            temperature=gen.temperature,
            top_k=top_k,
        )
        answer = service.ask(
            question,
            session_id=session,
            on_token=lambda delta: console.print(delta, end="", markup=False, highlight=False),
            filters=filters,
            stream=not no_stream,
        )
    except NoContextError:
        console.print(warn_no_results(question))
        raise typer.Exit(1)
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1)
    except EmbeddingError as exc:
        console.print(err_embedding(str(exc)))
        raise typer.Exit(1)
    except SchemaIntegrityError as exc:
        console.print(err_schema_integrity(exc.table, exc.diagnostic))
        raise typer.Exit(1)
    finally:
        pool.terminate()
        store.close()

    console.print()
    sources = []
    for result in answer.results:
        if result.repo_full_name not in sources:
            sources.append(result.repo_full_name)
    if sources:
        console.print("[dim]Sources: " + ", ".join(sources[: gen.max_context_snippets]) + "[/]")
    console.print(f"[dim]Session: {answer.session_id}[/]")
