"""Fixtures for CLI tests: isolated config, logging and a fake embedding pool."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from starrecall.db.models import Chunk, Embedding, Repo
from starrecall.db.repository import IndexRepository
from starrecall.embeddings.embedder import BatchItem

_STARRECALL_ENV = (
    "STARRECALL_EMBEDDING_MODEL",
    "STARRECALL_GENERATION_MODEL",
    "STARRECALL_POOL_SIZE",
    "STARRECALL_PREFERRED_BACKEND",
    "STARRECALL_CHECKPOINT_EVERY_EMBEDDINGS",
    "STARRECALL_CHECKPOINT_EVERY_MS",
    "STARRECALL_LOG_LEVEL",
    "STARRECALL_DB_PATH",
)


class FakePool:
    """Stand-in for EmbeddingWorkerPool: vectors are [1, 0] for every text."""

    max_queue_size = 64

    def __init__(self) -> None:
        self.terminated = False
        self.embedded: list[str] = []

    def embed_batch(self, texts):
        self.embedded.extend(texts)
        return [BatchItem(vector=np.array([1.0, 0.0], dtype=np.float32)) for _ in texts]

    def embed(self, text):
        return np.array([1.0, 0.0], dtype=np.float32)

    def terminate(self) -> None:
        self.terminated = True


@pytest.fixture(autouse=True)
def isolated_cli(tmp_path, monkeypatch):
    """No real global config, log files in tmp_path, wide console, no STARRECALL_* overrides."""
    monkeypatch.setattr("starrecall.config._GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml")
    monkeypatch.setattr("starrecall.cli.main.DEFAULT_LOG_DIR", tmp_path / "logs")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("COLUMNS", "200")
    for name in _STARRECALL_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_pool(monkeypatch):
    pool = FakePool()
    for module in ("starrecall.cli.sync", "starrecall.cli.search"):
        monkeypatch.setattr(f"{module}.build_pool", lambda cfg: pool)
    return pool


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "index.db"


@pytest.fixture
def seeded_db(db_path) -> Path:
    """Stable store with two embedded repos."""
    store = IndexRepository.open(db_path)
    store.upsert_repositories(
        [
            Repo(id=1, full_name="junegunn/fzf", name="fzf", html_url="https://github.com/junegunn/fzf",
                 updated_at="2024-01-01T00:00:00Z", language="Go", topics=["cli"]),
            Repo(id=2, full_name="BurntSushi/ripgrep", name="ripgrep",
                 html_url="https://github.com/BurntSushi/ripgrep", updated_at="2024-01-01T00:00:00Z",
                 language="Rust", topics=["search"]),
        ]
    )
    store.upsert_chunks(
        [
            Chunk(id="1:0", repo_id=1, text="A command-line fuzzy finder"),
            Chunk(id="2:0", repo_id=2, text="Recursively search directories for a regex"),
        ]
    )
    store.upsert_embeddings(
        [
            Embedding(chunk_id="1:0", model="m", vector=[1.0, 0.0]),
            Embedding(chunk_id="2:0", model="m", vector=[0.6, 0.8]),
        ]
    )
    store.close()
    return db_path
