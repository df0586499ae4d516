"""starrecall rich error messages.

Every error shown to the user names what went wrong and the exact action
that fixes it.

Usage:
    from starrecall.cli.errors import err_no_token
    console.print(err_no_token())
    raise typer.Exit(1)
"""

from __future__ import annotations

from starrecall.rag.llm_client import provider_of


def err_no_token() -> str:
    """No GitHub token in the environment or on the command line."""
    return (
        "[red]Error:[/] No GitHub token found.\n"
        "  Set:  export GITHUB_TOKEN=ghp_...\n"
        "  The token needs read access to your starred repositories."
    )


def err_github_auth() -> str:
    return (
        "[red]Error:[/] GitHub rejected the token (401).\n"
        "  Use a raw personal access token (no 'Bearer ' prefix) with access to /user/starred."
    )


def err_github_rate_limit(detail: str) -> str:
    return (
        f"[red]Error:[/] GitHub rate limit: {detail}\n"
        "  Wait for the limit to reset, then run:  starrecall sync"
    )


def err_github_failed(detail: str) -> str:
    return f"[red]Error:[/] GitHub request failed: {detail}"


def err_no_api_key(model: str) -> str:
    """No API key for the generation model's provider.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    provider = provider_of(model)
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider, f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-...\n"
        "  Or point generation.api_base at a local OpenAI-compatible server."
    )


def err_config(detail: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {detail}\n"
        "  Fix starrecall.yaml or ~/.starrecall/config.yaml and retry."
    )


def err_schema_integrity(table: str, diagnostic: str) -> str:
    """The store could not be repaired automatically."""
    return (
        f"[red]Error:[/] The '{table}' table is damaged and could not be repaired.\n"
        f"  [dim]{diagnostic}[/]\n"
        "  Run:  starrecall clear --yes   then   starrecall sync"
    )


def err_queue_overflow(detail: str) -> str:
    return (
        f"[red]Error:[/] {detail}\n"
        "  Raise embedding.max_queue_size in starrecall.yaml or embed in smaller batches."
    )


def err_embedding(detail: str) -> str:
    return (
        f"[red]Error:[/] Embedding failed: {detail}\n"
        "  Try:  export STARRECALL_PREFERRED_BACKEND=portable"
    )


def err_empty_index() -> str:
    return (
        "[yellow]The index is empty.[/]\n"
        "  Run:  starrecall sync"
    )


def warn_no_results(query: str) -> str:
    return (
        f"[yellow]No results for:[/] '{query}'\n"
        "  Loosen the filters, or run  starrecall embed  if chunks are still pending."
    )


def err_session_not_found(session_id: str) -> str:
    return (
        f"[yellow]Session not found:[/] '{session_id}'\n"
        "  Run:  starrecall history  to list sessions."
    )
