"""Tests for the forward-only migration runner."""

from __future__ import annotations

from starrecall.db.connection import Database
from starrecall.db.migrations import MIGRATIONS, current_version, run_migrations
from starrecall.db.schema import CURRENT_VERSION


def _conn(tmp_path):
    db = Database(tmp_path / "starrecall.db")
    return db, db.connect()


def _tables(conn) -> set[str]:
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}


def test_migrations_are_append_only_and_ascending():
    versions = [v for v, _ in MIGRATIONS]
    assert versions == sorted(versions)
    assert versions[-1] == CURRENT_VERSION


def test_run_migrations_creates_all_tables(tmp_path):
    db, conn = _conn(tmp_path)
    run_migrations(conn)
    assert {"repos", "chunks", "embeddings", "index_meta", "chat_sessions", "chat_messages",
            "schema_version"} <= _tables(conn)
    db.close()


def test_run_migrations_records_version(tmp_path):
    db, conn = _conn(tmp_path)
    run_migrations(conn)
    assert current_version(conn) == CURRENT_VERSION
    db.close()


def test_run_migrations_idempotent(tmp_path):
    db, conn = _conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    rows = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    db.close()
    assert rows == len(MIGRATIONS)


def test_v2_creates_chunk_repo_index(tmp_path):
    db, conn = _conn(tmp_path)
    run_migrations(conn)
    names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'").fetchall()}
    db.close()
    assert "idx_chunks_repo_id" in names


def test_pending_only_from_partial_version(tmp_path):
    db, conn = _conn(tmp_path)
    conn.execute("CREATE TABLE schema_version (version INTEGER NOT NULL, applied_at INTEGER NOT NULL)")
    conn.executescript(MIGRATIONS[0][1])
    conn.execute("INSERT INTO schema_version VALUES (1, 0)")

    run_migrations(conn)
    versions = [r[0] for r in conn.execute("SELECT version FROM schema_version ORDER BY version")]
    db.close()
    assert versions == [1, 2]
