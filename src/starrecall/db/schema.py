"""Database schema DDL, shape expectations, and self-healing.

The expected shape of each self-healed table is declared as data
(``TableSpec``) and compared against the live shape read from SQLite
(``TableShape``) by the pure :func:`check_table`. Only when that checklist
reports violations do the SQL repair routines run.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field

from starrecall.logging import get_logger

log = get_logger(__name__)

_NOW_MS_SQL = "CAST(strftime('%s','now') AS INTEGER) * 1000"

CREATE_REPOS = """
CREATE TABLE IF NOT EXISTS repos (
    id              INTEGER PRIMARY KEY,
    full_name       TEXT NOT NULL,
    name            TEXT NOT NULL,
    description     TEXT,
    topics_json     TEXT NOT NULL DEFAULT '[]',
    language        TEXT,
    html_url        TEXT NOT NULL,
    stars           INTEGER NOT NULL DEFAULT 0,
    forks           INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL,
    readme_url      TEXT,
    readme_text     TEXT,
    checksum        TEXT,
    last_synced_at  INTEGER NOT NULL
)
"""

CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS chunks (
    id          TEXT PRIMARY KEY,
    repo_id     INTEGER NOT NULL,
    chunk_id    TEXT NOT NULL,
    text        TEXT NOT NULL,
    source      TEXT NOT NULL,
    created_at  INTEGER NOT NULL,
    FOREIGN KEY (repo_id) REFERENCES repos(id) ON DELETE CASCADE
)
"""

CREATE_EMBEDDINGS = """
CREATE TABLE IF NOT EXISTS embeddings (
    id          TEXT PRIMARY KEY,
    chunk_id    TEXT NOT NULL,
    model       TEXT NOT NULL,
    dimension   INTEGER NOT NULL,
    vector_blob BLOB NOT NULL,
    created_at  INTEGER NOT NULL,
    FOREIGN KEY (chunk_id) REFERENCES chunks(id) ON DELETE CASCADE
)
"""

CREATE_INDEX_META = """
CREATE TABLE IF NOT EXISTS index_meta (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  INTEGER NOT NULL
)
"""

CREATE_CHAT_SESSIONS = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    id          TEXT NOT NULL PRIMARY KEY,
    query       TEXT NOT NULL,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
)
"""

CREATE_CHAT_MESSAGES = """
CREATE TABLE IF NOT EXISTS chat_messages (
    id          TEXT NOT NULL PRIMARY KEY,
    session_id  TEXT NOT NULL,
    role        TEXT NOT NULL CHECK (role IN ('user','assistant','system')),
    content     TEXT NOT NULL,
    sequence    INTEGER NOT NULL,
    created_at  INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
)
"""

_CHAT_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_order "
    "ON chat_messages(session_id, created_at, sequence)",
)

_EMBEDDING_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_embeddings_chunk_id ON embeddings(chunk_id)",
)


# ---------------------------------------------------------------------------
# Declarative expectations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str
    not_null: bool | None = True  # None: nullability not checked


@dataclass(frozen=True)
class ForeignKeySpec:
    column: str
    table: str
    to: str
    on_delete: str = "CASCADE"


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: tuple[ColumnSpec, ...]
    checks: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKeySpec, ...] = ()


@dataclass(frozen=True)
class ColumnShape:
    type: str
    not_null: bool


@dataclass(frozen=True)
class ForeignKeyShape:
    table: str
    column: str
    to: str
    on_delete: str


@dataclass
class TableShape:
    """Live shape of a table as reported by SQLite introspection."""

    columns: dict[str, ColumnShape] = field(default_factory=dict)
    sql: str = ""
    foreign_keys: list[ForeignKeyShape] = field(default_factory=list)


CHAT_SESSIONS_SPEC = TableSpec(
    name="chat_sessions",
    columns=(
        ColumnSpec("id", "TEXT"),
        ColumnSpec("query", "TEXT"),
        ColumnSpec("created_at", "INTEGER"),
        ColumnSpec("updated_at", "INTEGER"),
    ),
)

CHAT_MESSAGES_SPEC = TableSpec(
    name="chat_messages",
    columns=(
        ColumnSpec("id", "TEXT"),
        ColumnSpec("session_id", "TEXT"),
        ColumnSpec("role", "TEXT"),
        ColumnSpec("content", "TEXT"),
        ColumnSpec("sequence", "INTEGER"),
        ColumnSpec("created_at", "INTEGER"),
    ),
    checks=("role IN ('user','assistant','system')",),
    foreign_keys=(ForeignKeySpec("session_id", "chat_sessions", "id"),),
)

EMBEDDINGS_SPEC = TableSpec(
    name="embeddings",
    columns=(
        ColumnSpec("id", "TEXT", None),
        ColumnSpec("chunk_id", "TEXT", None),
        ColumnSpec("model", "TEXT", None),
        ColumnSpec("dimension", "INTEGER", None),
        ColumnSpec("vector_blob", "BLOB", None),
        ColumnSpec("created_at", "INTEGER", None),
    ),
    foreign_keys=(ForeignKeySpec("chunk_id", "chunks", "id"),),
)

INDEX_META_SPEC = TableSpec(
    name="index_meta",
    columns=(
        ColumnSpec("key", "TEXT", None),
        ColumnSpec("value", "TEXT", None),
        ColumnSpec("updated_at", "INTEGER", None),
    ),
)


def _squash(sql: str) -> str:
    return "".join(sql.lower().split())


def check_table(spec: TableSpec, shape: TableShape | None) -> list[str]:
    """Return the list of ways *shape* violates *spec* (empty when compatible)."""
    if shape is None or not shape.columns:
        return [f"{spec.name}: table missing"]

    violations: list[str] = []
    for col in spec.columns:
        live = shape.columns.get(col.name)
        if live is None:
            violations.append(f"{spec.name}.{col.name}: column missing")
            continue
        if live.type.upper() != col.type.upper():
            violations.append(f"{spec.name}.{col.name}: type {live.type or '(none)'} != {col.type}")
        if col.not_null is not None and live.not_null != col.not_null:
            violations.append(f"{spec.name}.{col.name}: not_null {live.not_null} != {col.not_null}")

    squashed_sql = _squash(shape.sql)
    for check in spec.checks:
        if _squash(check) not in squashed_sql:
            violations.append(f"{spec.name}: check constraint missing: {check}")

    for fk in spec.foreign_keys:
        found = any(
            live.table == fk.table
            and live.column == fk.column
            and live.to == fk.to
            and live.on_delete.upper() == fk.on_delete.upper()
            for live in shape.foreign_keys
        )
        if not found:
            violations.append(
                f"{spec.name}: foreign key {fk.column} -> {fk.table}({fk.to}) "
                f"ON DELETE {fk.on_delete} missing"
            )
    return violations


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def read_shape(conn: sqlite3.Connection, table: str) -> TableShape | None:
    """Read column, constraint and foreign-key shape of *table* (None if absent)."""
    if not table_exists(conn, table):
        return None
    columns = {
        row[1]: ColumnShape(type=str(row[2]).upper(), not_null=bool(row[3]))
        for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
    }
    sql_row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    ).fetchone()
    foreign_keys = [
        ForeignKeyShape(table=row[2], column=row[3], to=row[4], on_delete=str(row[6]))
        for row in conn.execute(f"PRAGMA foreign_key_list({table})").fetchall()
    ]
    return TableShape(columns=columns, sql=(sql_row[0] or "") if sql_row else "", foreign_keys=foreign_keys)


def table_diagnostic(conn: sqlite3.Connection, table: str) -> str:
    """Describe the live schema of *table* for error messages (no row data)."""
    sql_row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table,)
    ).fetchone()
    table_sql = (sql_row[0] or "") if sql_row else ""
    columns = ",".join(
        f"{row[1]}:{row[2]}:notnull={row[3]}"
        for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
    ) or "none"
    fks = ",".join(
        f"{row[2]}.{row[3]}->{row[4]}:on_delete={row[6]}"
        for row in conn.execute(f"PRAGMA foreign_key_list({table})").fetchall()
    ) or "none"
    triggers = " || ".join(
        f"{row[0]}:{row[1] or ''}"
        for row in conn.execute(
            "SELECT name, sql FROM sqlite_master WHERE type='trigger' AND tbl_name = ?", (table,)
        ).fetchall()
    ) or "none"
    return (
        f"{table}_table_sql={' '.join(table_sql.split())}; {table}_columns={columns}; "
        f"{table}_fk={fks}; {table}_triggers={triggers}"
    )


def _column_names(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


# ---------------------------------------------------------------------------
# Repair routines
# ---------------------------------------------------------------------------


def create_canonical_chat_tables(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_CHAT_SESSIONS)
    conn.execute(CREATE_CHAT_MESSAGES)
    for stmt in _CHAT_INDEXES:
        conn.execute(stmt)


def _positive_int_or_null(expr: str) -> str:
    return f"CASE WHEN CAST({expr} AS INTEGER) > 0 THEN CAST({expr} AS INTEGER) ELSE NULL END"


def rebuild_chat_tables(conn: sqlite3.Connection) -> None:
    """Recreate chat tables in canonical shape, migrating salvageable rows.

    Runs in one transaction: the existing tables are renamed aside, canonical
    tables are created, rows are copied with coalescing (blank ids and orphaned
    messages dropped, invalid timestamps replaced by now, invalid roles mapped
    to ``user``, sequences below 1 replaced by 1), and the renamed originals
    are dropped. Any failure rolls the whole rebuild back and re-raises.
    """
    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        conn.execute("BEGIN")
        conn.execute("DROP TABLE IF EXISTS chat_messages_old")
        conn.execute("DROP TABLE IF EXISTS chat_sessions_old")

        if table_exists(conn, "chat_messages"):
            conn.execute("ALTER TABLE chat_messages RENAME TO chat_messages_old")
        else:
            conn.execute(
                "CREATE TABLE chat_messages_old (id TEXT, session_id TEXT, role TEXT, "
                "content TEXT, sequence INTEGER, created_at INTEGER)"
            )
        if table_exists(conn, "chat_sessions"):
            conn.execute("ALTER TABLE chat_sessions RENAME TO chat_sessions_old")
        else:
            conn.execute(
                "CREATE TABLE chat_sessions_old (id TEXT, query TEXT, created_at INTEGER, updated_at INTEGER)"
            )

        conn.execute(CREATE_CHAT_SESSIONS)
        conn.execute(CREATE_CHAT_MESSAGES)

        s_cols = _column_names(conn, "chat_sessions_old")
        s_id = "TRIM(COALESCE(s.id, ''))" if "id" in s_cols else "''"
        s_query = "COALESCE(s.query, '')" if "query" in s_cols else "''"
        s_created = _positive_int_or_null("s.created_at") if "created_at" in s_cols else "NULL"
        s_updated = _positive_int_or_null("s.updated_at") if "updated_at" in s_cols else "NULL"
        conn.execute(
            f"""
            INSERT OR REPLACE INTO chat_sessions (id, query, created_at, updated_at)
            SELECT {s_id}, {s_query},
                   COALESCE({s_created}, {s_updated}, {_NOW_MS_SQL}),
                   COALESCE({s_updated}, {s_created}, {_NOW_MS_SQL})
            FROM chat_sessions_old s
            WHERE {s_id} <> ''
            """
        )

        m_cols = _column_names(conn, "chat_messages_old")
        m_id = "TRIM(COALESCE(m.id, ''))" if "id" in m_cols else "''"
        m_session = "TRIM(COALESCE(m.session_id, ''))" if "session_id" in m_cols else "''"
        m_role = (
            "CASE WHEN m.role IN ('user','assistant','system') THEN m.role ELSE 'user' END"
            if "role" in m_cols
            else "'user'"
        )
        m_content = "COALESCE(m.content, '')" if "content" in m_cols else "''"
        m_seq_raw = "CAST(m.sequence AS INTEGER)" if "sequence" in m_cols else "1"
        m_seq = f"CASE WHEN {m_seq_raw} IS NULL OR {m_seq_raw} < 1 THEN 1 ELSE {m_seq_raw} END"
        m_created = _positive_int_or_null("m.created_at") if "created_at" in m_cols else "NULL"
        conn.execute(
            f"""
            INSERT OR REPLACE INTO chat_messages (id, session_id, role, content, sequence, created_at)
            SELECT {m_id}, {m_session}, {m_role}, {m_content}, {m_seq},
                   COALESCE({m_created}, {_NOW_MS_SQL})
            FROM chat_messages_old m
            JOIN chat_sessions s ON s.id = {m_session}
            WHERE {m_id} <> '' AND {m_session} <> ''
            """
        )

        conn.execute("DROP TABLE IF EXISTS chat_messages_old")
        conn.execute("DROP TABLE IF EXISTS chat_sessions_old")
        for stmt in _CHAT_INDEXES:
            conn.execute(stmt)
        conn.execute("COMMIT")
    except sqlite3.Error:
        conn.execute("ROLLBACK")
        raise
    finally:
        conn.execute("PRAGMA foreign_keys = ON")


def normalize_chat_rows(conn: sqlite3.Connection) -> None:
    """Coalesce invalid values in canonical chat tables and drop orphans."""
    conn.execute(
        f"""
        UPDATE chat_sessions SET
            query = COALESCE(query, ''),
            created_at = COALESCE({_positive_int_or_null('created_at')},
                                  {_positive_int_or_null('updated_at')}, {_NOW_MS_SQL}),
            updated_at = COALESCE({_positive_int_or_null('updated_at')},
                                  {_positive_int_or_null('created_at')}, {_NOW_MS_SQL})
        """
    )
    conn.execute(
        f"""
        UPDATE chat_messages SET
            session_id = TRIM(COALESCE(session_id, '')),
            role = CASE WHEN role IN ('user','assistant','system') THEN role ELSE 'user' END,
            content = COALESCE(content, ''),
            sequence = CASE WHEN CAST(sequence AS INTEGER) IS NULL OR CAST(sequence AS INTEGER) < 1
                            THEN 1 ELSE CAST(sequence AS INTEGER) END,
            created_at = COALESCE({_positive_int_or_null('created_at')}, {_NOW_MS_SQL})
        """
    )
    conn.execute("DELETE FROM chat_sessions WHERE TRIM(COALESCE(id, '')) = ''")
    conn.execute("DELETE FROM chat_messages WHERE TRIM(COALESCE(id, '')) = ''")
    conn.execute("DELETE FROM chat_messages WHERE session_id = ''")
    conn.execute("DELETE FROM chat_messages WHERE session_id NOT IN (SELECT id FROM chat_sessions)")


def recreate_embeddings_table(conn: sqlite3.Connection) -> None:
    """Drop and recreate the embeddings table. Vectors are re-derivable."""
    conn.execute("DROP TABLE IF EXISTS embeddings")
    conn.execute(CREATE_EMBEDDINGS)
    for stmt in _EMBEDDING_INDEXES:
        conn.execute(stmt)


def ensure_chat_schema(conn: sqlite3.Connection) -> bool:
    """Bring chat tables to canonical shape. Returns True if a rebuild ran."""
    message_cols = _column_names(conn, "chat_messages") if table_exists(conn, "chat_messages") else set()
    if message_cols and "sequence" not in message_cols:
        conn.execute("ALTER TABLE chat_messages ADD COLUMN sequence INTEGER NOT NULL DEFAULT 1")

    violations = check_table(CHAT_SESSIONS_SPEC, read_shape(conn, "chat_sessions")) + check_table(
        CHAT_MESSAGES_SPEC, read_shape(conn, "chat_messages")
    )
    rebuilt = False
    if violations:
        log.warning("schema.chat_rebuild", violations=violations)
        rebuild_chat_tables(conn)
        rebuilt = True

    create_canonical_chat_tables(conn)
    normalize_chat_rows(conn)
    return rebuilt


def ensure_embeddings_table(conn: sqlite3.Connection) -> bool:
    """Recreate the embeddings table if its shape is incompatible."""
    violations = check_table(EMBEDDINGS_SPEC, read_shape(conn, "embeddings"))
    if violations:
        log.warning("schema.embeddings_recreated", violations=violations)
        recreate_embeddings_table(conn)
        return True
    for stmt in _EMBEDDING_INDEXES:
        conn.execute(stmt)
    return False


def ensure_index_meta_table(conn: sqlite3.Connection) -> bool:
    violations = check_table(INDEX_META_SPEC, read_shape(conn, "index_meta"))
    if violations:
        log.warning("schema.index_meta_recreated", violations=violations)
        conn.execute("DROP TABLE IF EXISTS index_meta")
        conn.execute(CREATE_INDEX_META)
        return True
    return False


def heal_schema(conn: sqlite3.Connection) -> list[str]:
    """Detect and repair schema drift. Returns the names of repaired tables."""
    repaired: list[str] = []
    if "readme_text" not in _column_names(conn, "repos"):
        conn.execute("ALTER TABLE repos ADD COLUMN readme_text TEXT")
        repaired.append("repos")
    if ensure_chat_schema(conn):
        repaired.append("chat")
    if ensure_embeddings_table(conn):
        repaired.append("embeddings")
    if ensure_index_meta_table(conn):
        repaired.append("index_meta")
    return repaired


CURRENT_VERSION = 2


def initialize(conn: sqlite3.Connection) -> list[str]:
    """Run pending migrations, then self-heal drifted tables (idempotent)."""
    from starrecall.db.migrations import run_migrations

    run_migrations(conn)
    return heal_schema(conn)


class SchemaIntegrityError(RuntimeError):
    """A write still failed after the schema was healed.

    Carries the offending table's live schema description, never row data.
    """

    def __init__(self, table: str, diagnostic: str, cause: Exception) -> None:
        super().__init__(f"schema integrity failure on {table}: {cause} ({diagnostic})")
        self.table = table
        self.diagnostic = diagnostic
