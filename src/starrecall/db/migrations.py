"""Forward-only migration runner for the starrecall schema.

Chat, embeddings and index_meta tables are additionally shape-checked after
migrations run; see ``starrecall.db.schema.heal_schema``.
"""

from __future__ import annotations

import sqlite3

from starrecall.db.checkpoint import now_ms
from starrecall.db.schema import (
    CREATE_CHAT_MESSAGES,
    CREATE_CHAT_SESSIONS,
    CREATE_CHUNKS,
    CREATE_EMBEDDINGS,
    CREATE_INDEX_META,
    CREATE_REPOS,
)

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  INTEGER NOT NULL
)
"""

_V1_SQL = ";\n".join(
    [
        CREATE_REPOS,
        CREATE_CHUNKS,
        CREATE_EMBEDDINGS,
        CREATE_INDEX_META,
        CREATE_CHAT_SESSIONS,
        CREATE_CHAT_MESSAGES,
    ]
) + ";"

# Only indexes on tables that are never rebuilt by the self-heal pass.
_V2_SQL = """
CREATE INDEX IF NOT EXISTS idx_chunks_repo_id ON chunks(repo_id);
"""

# Append-only. Each entry: (version: int, sql: str).
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    current = current_version(conn)

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, now_ms()),
            )
