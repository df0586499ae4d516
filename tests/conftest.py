"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from starrecall.db.checkpoint import CheckpointPolicy
from starrecall.db.connection import Database
from starrecall.db.repository import IndexRepository
from starrecall.db.schema import initialize


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tmp_db(tmp_path):
    """File-backed working store in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "starrecall.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    db.close()


@pytest.fixture
def store(tmp_path, clock):
    """IndexRepository over a stable file in tmp_path, driven by a fake clock."""
    repo = IndexRepository.open(
        tmp_path / "starrecall.db",
        policy=CheckpointPolicy(every_embeddings=4, every_ms=1_000),
        clock=clock,
    )
    yield repo
    repo.close()

