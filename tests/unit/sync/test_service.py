"""End-to-end tests for SyncService with fake GitHub and embedding collaborators."""

from __future__ import annotations

import json

import numpy as np
import pytest

from starrecall.embeddings.embedder import BatchItem
from starrecall.github.client import GitHubAuthError, ReadmeBatch
from starrecall.github.models import Readme, StarredRepo
from starrecall.sync.service import SyncService, dedupe_remote


def _remote(repo_id, **overrides) -> StarredRepo:
    fields = dict(
        id=repo_id,
        full_name=f"octo/r{repo_id}",
        name=f"r{repo_id}",
        html_url=f"https://github.com/octo/r{repo_id}",
        updated_at="2024-01-01T00:00:00Z",
        description=f"repo number {repo_id}",
        topics=["tools"],
        language="Python",
    )
    fields.update(overrides)
    return StarredRepo(**fields)


class FakeClient:
    def __init__(self, starred, readmes=None, failed=None):
        self.starred = starred
        self.readmes = readmes or {}
        self.failed = failed or {}
        self.readme_requests: list[list[int]] = []

    def fetch_starred(self):
        return list(self.starred)

    def fetch_readmes(self, repos):
        ids = [r.id for r in repos]
        self.readme_requests.append(ids)
        batch = ReadmeBatch()
        for repo_id in ids:
            if repo_id in self.failed:
                batch.failed[repo_id] = self.failed[repo_id]
            else:
                batch.readmes[repo_id] = Readme(
                    repo_id=repo_id,
                    url=f"https://github.com/octo/r{repo_id}#readme" if repo_id in self.readmes else None,
                    text=self.readmes.get(repo_id),
                )
        return batch


class FakePool:
    def __init__(self, max_queue_size=1024, poison="poison"):
        self.max_queue_size = max_queue_size
        self.poison = poison
        self.calls: list[int] = []

    def embed_batch(self, texts):
        self.calls.append(len(texts))
        items = []
        for text in texts:
            if self.poison and self.poison in text:
                items.append(BatchItem(vector=None, error="tokenizer exploded"))
            else:
                items.append(BatchItem(vector=np.array([float(len(text)), 1.0], dtype=np.float32)))
        return items


@pytest.fixture
def pool():
    return FakePool()


def _service(store, client, pool, clock):
    return SyncService(store, client, pool, model_name="test-model", clock=clock)


def test_first_sync_indexes_everything(store, pool, clock):
    client = FakeClient([_remote(1), _remote(2)], readmes={1: "# Hello\n\nA **readme**"})
    summary = _service(store, client, pool, clock).run()

    assert summary.fetched == 2
    assert summary.candidates == 2
    assert summary.updated == 2
    assert summary.readme_missing == 1
    assert summary.chunks_written == store.count_chunks() == 2
    assert summary.embedded == 2
    assert summary.pending_embeddings == 0
    assert store.get_repository(1).readme_text == "# Hello\n\nA **readme**"
    assert store.get_repository(2).readme_url is None


def test_sync_records_checksums_and_meta(store, pool, clock):
    client = FakeClient([_remote(1)], readmes={1: "text"})
    summary = _service(store, client, pool, clock).run()

    assert store.get_repository(1).checksum
    assert store.get_index_meta("last_sync_at") == str(summary.finished_at)
    recorded = json.loads(store.get_index_meta("last_sync_summary"))
    assert recorded["fetched"] == 1


def test_second_sync_without_changes_does_nothing(store, pool, clock):
    client = FakeClient([_remote(1), _remote(2)], readmes={1: "text"})
    service = _service(store, client, pool, clock)
    service.run()
    pool.calls.clear()

    summary = service.run()

    assert summary.candidates == 0
    assert summary.updated == 0
    assert summary.chunks_written == 0
    assert client.readme_requests[-1] == []
    assert pool.calls == []


def test_reordered_topics_do_not_trigger_resync(store, pool, clock):
    client = FakeClient([_remote(1, topics=["a", "z"])], readmes={1: "text"})
    service = _service(store, client, pool, clock)
    service.run()
    chunk_ids = [c.id for c in store.list_chunks()]
    pool.calls.clear()

    client.starred = [_remote(1, topics=["z", "a"])]
    summary = service.run()

    assert summary.candidates == 0
    assert summary.updated == 0
    assert summary.chunks_written == 0
    assert client.readme_requests[-1] == []
    assert pool.calls == []
    assert [c.id for c in store.list_chunks()] == chunk_ids


def test_unstarred_repo_is_removed(store, pool, clock):
    client = FakeClient([_remote(1), _remote(2)])
    service = _service(store, client, pool, clock)
    service.run()

    client.starred = [_remote(2)]
    summary = service.run()

    assert summary.removed == 1
    assert store.get_repository(1) is None
    assert {c.repo_id for c in store.list_chunks()} == {2}
    assert store.count_embeddings() == store.count_chunks()


def test_metadata_change_rechunks_and_reembeds(store, pool, clock):
    client = FakeClient([_remote(1)])
    service = _service(store, client, pool, clock)
    service.run()

    client.starred = [_remote(1, description="completely different words")]
    summary = service.run()

    assert summary.candidates == 1
    assert summary.chunks_written == 1
    assert summary.embedded == 1
    assert "completely different words" in store.list_chunks(1)[0].text


def test_shrinking_readme_prunes_surplus_chunks(store, pool, clock):
    client = FakeClient([_remote(1)], readmes={1: "lorem ipsum dolor " * 300})
    service = _service(store, client, pool, clock)
    service.run()
    before = store.count_chunks()
    assert before > 1

    client.starred = [_remote(1, updated_at="2025-01-01T00:00:00Z")]
    client.readmes = {1: "short now"}
    summary = service.run()

    assert summary.chunks_pruned == before - 1
    assert [c.id for c in store.list_chunks(1)] == ["1:0"]


def test_readme_failure_skips_repo_until_next_sync(store, pool, clock):
    client = FakeClient([_remote(1), _remote(2)], failed={2: "GitHub request failed (500)"})
    service = _service(store, client, pool, clock)
    summary = service.run()

    assert summary.readme_failed == 1
    assert summary.updated == 1
    assert store.get_repository(2) is None

    client.failed = {}
    summary = service.run()
    assert summary.candidates == 1
    assert store.get_repository(2) is not None


def test_auth_error_propagates(store, pool, clock):
    class AuthFailing(FakeClient):
        def fetch_starred(self):
            raise GitHubAuthError("bad token", status=401)

    with pytest.raises(GitHubAuthError):
        _service(store, AuthFailing([]), pool, clock).run()


def test_run_without_embedding_leaves_chunks_pending(store, pool, clock):
    client = FakeClient([_remote(1)])
    summary = _service(store, client, pool, clock).run(embed=False)
    assert summary.embedded == 0
    assert summary.pending_embeddings == 1
    assert pool.calls == []


def test_failed_embeddings_degrade_to_partial_progress(store, pool, clock):
    client = FakeClient([_remote(1), _remote(2, description="poison pill")])
    summary = _service(store, client, pool, clock).run()

    assert summary.embedded == 1
    assert summary.embedding_failed == 1
    assert summary.pending_embeddings == 1
    assert store.count_embeddings() == 1


def test_embed_pending_respects_queue_bound(store, clock):
    pool = FakePool(max_queue_size=2)
    client = FakeClient([_remote(i) for i in range(1, 6)])
    service = _service(store, client, pool, clock)
    service.run(embed=False)

    result = service.embed_pending()

    assert result.embedded == 5
    assert result.remaining == 0
    assert pool.calls == [2, 2, 1]


def test_embed_pending_stores_model_name(store, pool, clock):
    service = _service(store, FakeClient([_remote(1)]), pool, clock)
    service.run()
    row = store.conn.execute("SELECT model, dimension FROM embeddings").fetchone()
    assert row["model"] == "test-model"
    assert row["dimension"] == 2


def test_progress_callback_reports_stages(store, pool, clock):
    seen = []
    client = FakeClient([_remote(1)])
    _service(store, client, pool, clock).run(progress=lambda stage, done, total: seen.append(stage))
    assert seen[0] == "plan"
    assert "chunk" in seen
    assert seen[-1] == "embed"


def test_run_requires_client(store, pool, clock):
    with pytest.raises(RuntimeError):
        _service(store, None, pool, clock).run()


def test_dedupe_remote_keeps_first():
    first = _remote(1, description="first")
    repos = dedupe_remote([first, _remote(2), _remote(1, description="second")])
    assert [r.id for r in repos] == [1, 2]
    assert repos[0] is first
