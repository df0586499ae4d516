"""Dense retrieval over the local index, plus result filters and context building.

The query is embedded through the same worker pool used for indexing and
ranked by :meth:`IndexRepository.find_similar`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from starrecall.db.models import SearchResult
from starrecall.db.repository import IndexRepository
from starrecall.embeddings.pool import EmbeddingWorkerPool

DEFAULT_TOP_K = 10
MAX_CONTEXT_SNIPPETS = 8


@dataclass
class SearchFilters:
    """Post-ranking filters. ``None`` means "any".

    Attributes:
        language: Case-insensitive exact match on the repo language.
        topic: Case-insensitive membership in the repo topics.
        updated_within_days: Keep repos whose ``updated_at`` is at most this
            many days old; an unparseable ``updated_at`` never passes.
    """

    language: str | None = None
    topic: str | None = None
    updated_within_days: int | None = None

    @property
    def active(self) -> bool:
        return any(v is not None for v in (self.language, self.topic, self.updated_within_days))


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def filter_results(
    results: list[SearchResult],
    filters: SearchFilters | None,
    now: datetime | None = None,
) -> list[SearchResult]:
    """Apply *filters* to ranked *results*, keeping rank order."""
    if filters is None or not filters.active:
        return list(results)
    current = now or datetime.now(timezone.utc)
    kept = []
    for result in results:
        if filters.language is not None and (result.language or "").lower() != filters.language.lower():
            continue
        if filters.topic is not None and filters.topic.lower() not in {t.lower() for t in result.topics}:
            continue
        if filters.updated_within_days is not None:
            updated = _parse_iso(result.updated_at)
            if updated is None or current - updated > timedelta(days=filters.updated_within_days):
                continue
        kept.append(result)
    return kept


def retrieve(
    query: str,
    store: IndexRepository,
    pool: EmbeddingWorkerPool,
    k: int = DEFAULT_TOP_K,
    filters: SearchFilters | None = None,
) -> list[SearchResult]:
    """Embed *query* and return the top-*k* chunks, filtered, best-first.

    Raises:
        ValueError: If *query* is blank.
        EmbeddingError: If the query could not be embedded.
    """
    if not query.strip():
        raise ValueError("query must not be empty")
    vector = pool.embed(query.strip())
    return filter_results(store.find_similar(vector, k=k), filters)


def build_context(results: list[SearchResult], limit: int = MAX_CONTEXT_SNIPPETS) -> list[str]:
    """Return up to *limit* snippets, ``"{full_name}\\n{text}"``, in rank order."""
    return [f"{r.repo_full_name}\n{r.text}" for r in results[: max(0, limit)]]


def format_context(snippets: list[str]) -> str:
    return "\n\n".join(f"Context {i}:\n{snippet}" for i, snippet in enumerate(snippets, start=1))
