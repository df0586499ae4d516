"""Sync service: starred repos → README → checksum → chunks → vectors.

Failures degrade to partial progress. A repo whose README fetch failed is
skipped for this run, and chunks that fail to embed are skipped for the rest
of the run. Everything already stored stays searchable.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass

from starrecall.chunking.chunker import RepoChunker
from starrecall.db.checkpoint import now_ms
from starrecall.db.models import Embedding, Repo
from starrecall.db.repository import IndexRepository
from starrecall.embeddings.embedder import DEFAULT_MODEL
from starrecall.embeddings.pool import EmbeddingWorkerPool
from starrecall.github.client import GitHubClient
from starrecall.github.models import StarredRepo
from starrecall.logging import get_logger
from starrecall.sync.checksum import repo_checksum
from starrecall.sync.plan import build_sync_plan

log = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class EmbedSummary:
    embedded: int = 0
    failed: int = 0
    remaining: int = 0


@dataclass
class SyncSummary:
    fetched: int = 0
    removed: int = 0
    candidates: int = 0
    updated: int = 0
    readme_missing: int = 0
    readme_failed: int = 0
    chunks_written: int = 0
    chunks_pruned: int = 0
    embedded: int = 0
    embedding_failed: int = 0
    pending_embeddings: int = 0
    started_at: int = 0
    finished_at: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def dedupe_remote(repos: list[StarredRepo]) -> list[StarredRepo]:
    """Drop repeated ids, keeping the first occurrence."""
    seen: set[int] = set()
    unique = []
    for repo in repos:
        if repo.id in seen:
            log.warning("sync.duplicate_remote_repo", repo_id=repo.id, full_name=repo.full_name)
            continue
        seen.add(repo.id)
        unique.append(repo)
    return unique


class SyncService:
    """Run one sync cycle against the local store.

    Args:
        store: Open index repository.
        client: GitHub client used for stars and READMEs.
        pool: Embedding pool; its ``max_queue_size`` bounds each embed round.
        chunker: Repo chunker (defaults to :class:`RepoChunker`).
        model_name: Recorded on every stored embedding.
    """

    def __init__(
        self,
        store: IndexRepository,
        client: GitHubClient | None,
        pool: EmbeddingWorkerPool,
        chunker: RepoChunker | None = None,
        model_name: str = DEFAULT_MODEL,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.client = client
        self.pool = pool
        self.chunker = chunker or RepoChunker()
        self.model_name = model_name
        self._clock = clock

    def run(self, *, embed: bool = True, progress: ProgressCallback | None = None) -> SyncSummary:
        """Fetch stars, update changed repos, re-chunk them and embed new chunks."""
        if self.client is None:
            raise RuntimeError("SyncService.run needs a GitHub client")
        summary = SyncSummary(started_at=self._clock())

        remote = dedupe_remote(self.client.fetch_starred())
        summary.fetched = len(remote)
        local = self.store.list_repo_sync_state()
        stored_checksums = {state.id: state.checksum for state in local}

        plan = build_sync_plan(local, remote)
        summary.removed = self.store.delete_repositories_by_ids(plan.removed_ids)
        summary.candidates = len(plan.candidate_ids)
        if progress:
            progress("plan", summary.candidates, summary.fetched)

        candidate_ids = set(plan.candidate_ids)
        candidates = [repo for repo in remote if repo.id in candidate_ids]
        readmes = self.client.fetch_readmes(candidates)
        summary.readme_failed = len(readmes.failed)
        summary.readme_missing = readmes.missing_count

        repos: list[Repo] = []
        for remote_repo in candidates:
            readme = readmes.readmes.get(remote_repo.id)
            if readme is None:
                continue
            checksum = repo_checksum(remote_repo, readme.text)
            repos.append(remote_repo.to_repo(readme.url, readme.text, checksum))
        self.store.upsert_repositories(repos, synced_at=self._clock())
        summary.updated = len(repos)

        for index, repo in enumerate(repos, start=1):
            if stored_checksums.get(repo.id) == repo.checksum and self.store.list_chunks(repo.id):
                continue
            chunks = self.chunker.chunk(repo)
            summary.chunks_written += self.store.upsert_chunks(chunks)
            summary.chunks_pruned += self.store.prune_chunks(repo.id, [c.id for c in chunks])
            if progress:
                progress("chunk", index, len(repos))

        if embed:
            embedded = self.embed_pending(progress=progress)
            summary.embedded = embedded.embedded
            summary.embedding_failed = embedded.failed
        summary.pending_embeddings = self.store.count_pending_embeddings()
        summary.finished_at = self._clock()

        self.store.upsert_index_meta("last_sync_at", str(summary.finished_at))
        self.store.upsert_index_meta("last_sync_summary", summary.to_json())
        log.info("sync.complete", **asdict(summary))
        return summary

    def embed_pending(self, progress: ProgressCallback | None = None) -> EmbedSummary:
        """Embed every chunk that has no vector yet, one pool round at a time."""
        result = EmbedSummary()
        failed: set[str] = set()
        total = self.store.count_pending_embeddings()
        while True:
            chunks = self.store.get_chunks_to_embed(limit=self.pool.max_queue_size, exclude=failed)
            if not chunks:
                break
            items = self.pool.embed_batch([chunk.text for chunk in chunks])
            stamp = self._clock()
            embeddings = []
            for chunk, item in zip(chunks, items):
                if item.ok:
                    embeddings.append(
                        Embedding(chunk_id=chunk.id, model=self.model_name, vector=item.vector, created_at=stamp)
                    )
                else:
                    failed.add(chunk.id)
                    log.debug("sync.embedding_failed", chunk_id=chunk.id, error=item.error)
            result.embedded += self.store.upsert_embeddings(embeddings)
            self.store.maybe_flush()
            if progress:
                progress("embed", result.embedded + len(failed), total)

        result.failed = len(failed)
        result.remaining = self.store.count_pending_embeddings()
        self.store.flush_checkpoint()
        if failed:
            log.warning("sync.embeddings_skipped", failed=len(failed), remaining=result.remaining)
        return result
