"""Repository pattern for all starrecall database operations.

Single interface for: repos, chunks, embeddings + similarity search, index
metadata, chat history and checkpointing of the working store.
"""

from __future__ import annotations

import atexit
import dataclasses
import json
import signal
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import numpy as np

from starrecall.db.checkpoint import (
    CheckpointPolicy,
    CheckpointStatus,
    CheckpointTracker,
    now_ms,
)
from starrecall.db.connection import Database
from starrecall.db.models import (
    CHAT_ROLES,
    ChatMessage,
    ChatSession,
    Chunk,
    Embedding,
    Repo,
    RepoSyncState,
    SearchResult,
)
from starrecall.db.schema import SchemaIntegrityError, heal_schema, initialize, table_diagnostic
from starrecall.db.vectors import blob_to_vector, l2_normalize, vector_to_blob
from starrecall.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Keeps IN (...) lists below SQLite's host-parameter limit.
_IN_BATCH = 500

_HEALABLE_ERRORS = (
    "datatype mismatch",
    "no such table",
    "not null constraint failed",
    "foreign key constraint failed",
    "check constraint failed",
)

_REPO_COLUMNS = (
    "id, full_name, name, description, topics_json, language, html_url, stars, forks, "
    "updated_at, readme_url, readme_text, checksum, last_synced_at"
)


def _is_healable(exc: sqlite3.Error) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _HEALABLE_ERRORS)


def _batched(items: Sequence[T], size: int = _IN_BATCH) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclasses.dataclass
class _VectorCache:
    row_count: int
    by_dimension: dict[int, tuple[list[str], np.ndarray]]


class IndexRepository:
    """Data access layer for the starrecall store.

    Every multi-statement write runs in one transaction under a writer lock.
    Non-embedding writes are exported to the stable file immediately;
    embedding writes are exported according to the checkpoint policy.

    Args:
        db: An open :class:`Database` whose schema is initialised.
        policy: Checkpoint thresholds for embedding writes.
        clock: Millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        policy: CheckpointPolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._clock = clock
        self._lock = threading.RLock()
        self._tracker = CheckpointTracker(policy, clock)
        self._cache: _VectorCache | None = None
        self._hooks_installed = False
        self._previous_handlers: dict[int, Any] = {}

    @classmethod
    def open(
        cls,
        db_path: Path | str | None,
        policy: CheckpointPolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> IndexRepository:
        """Load (or create) the store at *db_path* and initialise its schema.

        ``None`` opens a memory-only store.
        """
        db = Database(db_path)
        db.connect()
        repaired = initialize(db.conn)
        if repaired:
            log.warning("db.schema_healed", tables=repaired)
        repo = cls(db, policy, clock)
        repo._record_store_meta()
        return repo

    @property
    def conn(self) -> sqlite3.Connection:
        return self._db.conn

    @property
    def database(self) -> Database:
        return self._db

    # ------------------------------------------------------------------
    # Transactions and checkpointing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one transaction under the writer lock."""
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _write(self, table: str, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run *work* in a transaction, healing the schema and retrying once."""
        with self._lock:
            try:
                with self.transaction() as conn:
                    return work(conn)
            except sqlite3.DatabaseError as exc:
                if not _is_healable(exc):
                    raise
                log.warning("db.write_heal_retry", table=table, error=str(exc))
                heal_schema(self.conn)
                self._cache = None
            try:
                with self.transaction() as conn:
                    return work(conn)
            except sqlite3.DatabaseError as exc:
                if not _is_healable(exc):
                    raise
                raise SchemaIntegrityError(table, table_diagnostic(self.conn, table), exc) from exc

    def _checkpoint(self) -> bool:
        with self._lock:
            at = self._clock()
            self.conn.execute(
                "INSERT INTO index_meta (key, value, updated_at) VALUES ('last_checkpoint_at', ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (str(at), at),
            )
            written = self._db.export()
            pending = self._tracker.pending
            self._tracker.mark_flushed()
            if written and pending:
                log.debug("db.checkpoint", pending_embeddings=pending, path=str(self._db.db_path))
            return written

    def _after_write(self, embedding_rows: int = 0) -> None:
        if embedding_rows:
            self._tracker.note_writes(embedding_rows)
            if not self._tracker.should_flush():
                return
        self._checkpoint()

    def maybe_flush(self) -> bool:
        """Export if the checkpoint policy says a flush is due."""
        with self._lock:
            if self._tracker.should_flush():
                return self._checkpoint()
            return False

    def flush_checkpoint(self) -> bool:
        """Force an export of the working store regardless of the policy."""
        return self._checkpoint()

    def checkpoint_status(self) -> CheckpointStatus:
        return self._tracker.status()

    def install_lifecycle_hooks(self) -> None:
        """Flush pending writes at interpreter exit and on SIGTERM/SIGHUP."""
        if self._hooks_installed:
            return
        atexit.register(self._flush_at_exit)
        if threading.current_thread() is threading.main_thread():
            for name in ("SIGTERM", "SIGHUP"):
                signum = getattr(signal, name, None)
                if signum is None:
                    continue
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        self._hooks_installed = True

    def _flush_at_exit(self) -> None:
        if not self._db.is_open or not self._tracker.pending:
            return
        if self.conn.in_transaction:
            # backup() blocks on an open write transaction
            log.warning("db.checkpoint_skipped", reason="transaction_open", pending_embeddings=self._tracker.pending)
            return
        self._checkpoint()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self._flush_at_exit()
        previous = self._previous_handlers.get(signum)
        if previous is signal.SIG_IGN:
            return
        if callable(previous):
            previous(signum, frame)
        else:
            raise SystemExit(128 + signum)

    def _uninstall_lifecycle_hooks(self) -> None:
        if not self._hooks_installed:
            return
        atexit.unregister(self._flush_at_exit)
        for signum, previous in self._previous_handlers.items():
            if threading.current_thread() is threading.main_thread():
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        self._hooks_installed = False

    def close(self) -> None:
        """Flush, remove lifecycle hooks and close the working store."""
        with self._lock:
            if self._db.is_open:
                self._checkpoint()
            self._uninstall_lifecycle_hooks()
            self._db.close()
            self._cache = None

    def __enter__(self) -> IndexRepository:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Repos
    # ------------------------------------------------------------------

    def upsert_repositories(self, repos: Iterable[Repo], synced_at: int | None = None) -> int:
        """Insert or update repos by id. Returns the number of rows written."""
        items = list(repos)
        for repo in items:
            if not repo.full_name:
                raise ValueError(f"repo {repo.id} has an empty full_name")
        if not items:
            return 0
        stamp = synced_at if synced_at is not None else self._clock()

        def work(conn: sqlite3.Connection) -> int:
            conn.executemany(
                f"""
                INSERT INTO repos ({_REPO_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name = excluded.full_name,
                    name = excluded.name,
                    description = excluded.description,
                    topics_json = excluded.topics_json,
                    language = excluded.language,
                    html_url = excluded.html_url,
                    stars = excluded.stars,
                    forks = excluded.forks,
                    updated_at = excluded.updated_at,
                    readme_url = excluded.readme_url,
                    readme_text = excluded.readme_text,
                    checksum = excluded.checksum,
                    last_synced_at = excluded.last_synced_at
                """,
                [
                    (
                        r.id, r.full_name, r.name, r.description, r.topics_json, r.language,
                        r.html_url, r.stars, r.forks, r.updated_at, r.readme_url,
                        r.readme_text, r.checksum, stamp,
                    )
                    for r in items
                ],
            )
            return len(items)

        written = self._write("repos", work)
        self._cache = None
        self._after_write()
        return written

    def get_repository(self, repo_id: int) -> Repo | None:
        row = self.conn.execute(
            f"SELECT {_REPO_COLUMNS} FROM repos WHERE id = ?", (repo_id,)
        ).fetchone()
        return _row_to_repo(row) if row else None

    def list_repositories(self) -> list[Repo]:
        """Return all repos ordered by full name (case-insensitive)."""
        rows = self.conn.execute(
            f"SELECT {_REPO_COLUMNS} FROM repos ORDER BY full_name COLLATE NOCASE, id"
        ).fetchall()
        return [_row_to_repo(r) for r in rows]

    def list_repo_sync_state(self) -> list[RepoSyncState]:
        """Return the planner's view of every stored repo, in storage order."""
        rows = self.conn.execute(
            "SELECT id, full_name, description, topics_json, language, updated_at, checksum "
            "FROM repos ORDER BY rowid"
        ).fetchall()
        return [
            RepoSyncState(
                id=r["id"],
                full_name=r["full_name"],
                updated_at=r["updated_at"],
                description=r["description"],
                topics=_load_topics(r["topics_json"]),
                language=r["language"],
                checksum=r["checksum"],
            )
            for r in rows
        ]

    def delete_repositories_by_ids(self, repo_ids: Iterable[int]) -> int:
        """Delete repos (cascading to chunks and embeddings). Returns rows deleted."""
        ids = list(dict.fromkeys(repo_ids))
        if not ids:
            return 0

        def work(conn: sqlite3.Connection) -> int:
            deleted = 0
            for batch in _batched(ids):
                placeholders = ",".join("?" * len(batch))
                cur = conn.execute(f"DELETE FROM repos WHERE id IN ({placeholders})", list(batch))
                deleted += cur.rowcount
            return deleted

        deleted = self._write("repos", work)
        self._cache = None
        self._after_write()
        return deleted

    def count_repositories(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM repos").fetchone()[0]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def upsert_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Insert or update chunks by id.

        A chunk whose text changed loses its embedding; unchanged text keeps it.
        """
        items = list(chunks)
        for chunk in items:
            if not chunk.id:
                raise ValueError("chunk id must not be empty")
        if not items:
            return 0
        stamp = self._clock()

        def work(conn: sqlite3.Connection) -> int:
            for chunk in items:
                conn.execute(
                    "DELETE FROM embeddings WHERE chunk_id = ? AND EXISTS "
                    "(SELECT 1 FROM chunks WHERE id = ? AND text <> ?)",
                    (chunk.id, chunk.id, chunk.text),
                )
                conn.execute(
                    """
                    INSERT INTO chunks (id, repo_id, chunk_id, text, source, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        repo_id = excluded.repo_id,
                        chunk_id = excluded.chunk_id,
                        source = excluded.source,
                        created_at = CASE WHEN chunks.text = excluded.text
                                          THEN chunks.created_at ELSE excluded.created_at END,
                        text = excluded.text
                    """,
                    (chunk.id, chunk.repo_id, chunk.chunk_id, chunk.text, chunk.source,
                     chunk.created_at or stamp),
                )
            return len(items)

        written = self._write("chunks", work)
        self._cache = None
        self._after_write()
        return written

    def prune_chunks(self, repo_id: int, keep_ids: Iterable[str]) -> int:
        """Delete chunks of *repo_id* whose id is not in *keep_ids*."""
        keep = set(keep_ids)

        def work(conn: sqlite3.Connection) -> int:
            existing = [
                r[0] for r in conn.execute("SELECT id FROM chunks WHERE repo_id = ?", (repo_id,))
            ]
            surplus = [cid for cid in existing if cid not in keep]
            for batch in _batched(surplus):
                placeholders = ",".join("?" * len(batch))
                conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", list(batch))
            return len(surplus)

        pruned = self._write("chunks", work)
        if pruned:
            self._cache = None
            self._after_write()
        return pruned

    def list_chunks(self, repo_id: int | None = None) -> list[Chunk]:
        if repo_id is None:
            rows = self.conn.execute(
                "SELECT id, repo_id, text, source, created_at FROM chunks ORDER BY rowid"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT id, repo_id, text, source, created_at FROM chunks WHERE repo_id = ? ORDER BY rowid",
                (repo_id,),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunks_to_embed(
        self, limit: int | None = None, exclude: Iterable[str] = ()
    ) -> list[Chunk]:
        """Return chunks without an embedding, in storage order.

        Args:
            limit: Maximum number of chunks to return (``None`` for all).
            exclude: Chunk ids to skip, e.g. ones that already failed this run.
        """
        if limit is not None and limit <= 0:
            return []
        skip = set(exclude)
        sql = (
            "SELECT c.id, c.repo_id, c.text, c.source, c.created_at FROM chunks c "
            "LEFT JOIN embeddings e ON e.chunk_id = c.id WHERE e.id IS NULL ORDER BY c.rowid"
        )
        params: tuple[int, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit + len(skip),)
        chunks = [_row_to_chunk(r) for r in self.conn.execute(sql, params).fetchall()]
        chunks = [c for c in chunks if c.id not in skip]
        return chunks if limit is None else chunks[:limit]

    def count_pending_embeddings(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM chunks c LEFT JOIN embeddings e ON e.chunk_id = c.id WHERE e.id IS NULL"
        ).fetchone()[0]

    def count_chunks(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    # ------------------------------------------------------------------
    # Embeddings and similarity
    # ------------------------------------------------------------------

    def upsert_embeddings(self, embeddings: Iterable[Embedding]) -> int:
        """Insert or replace vectors. Export is deferred per the checkpoint policy.

        Raises:
            ValueError: On an empty chunk id or model, or an empty vector.
        """
        items = list(embeddings)
        rows = []
        stamp = self._clock()
        for emb in items:
            if not emb.chunk_id:
                raise ValueError("embedding chunk_id must not be empty")
            if not emb.model:
                raise ValueError(f"embedding model must not be empty for {emb.chunk_id}")
            if emb.dimension <= 0:
                raise ValueError(f"embedding for {emb.chunk_id} has dimension {emb.dimension}")
            rows.append(
                (emb.id, emb.chunk_id, emb.model, emb.dimension, vector_to_blob(emb.vector),
                 emb.created_at or stamp)
            )
        if not rows:
            return 0

        def work(conn: sqlite3.Connection) -> int:
            conn.executemany(
                """
                INSERT INTO embeddings (id, chunk_id, model, dimension, vector_blob, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    chunk_id = excluded.chunk_id,
                    model = excluded.model,
                    dimension = excluded.dimension,
                    vector_blob = excluded.vector_blob,
                    created_at = excluded.created_at
                """,
                rows,
            )
            return len(rows)

        written = self._write("embeddings", work)
        self._cache = None
        self._after_write(embedding_rows=written)
        return written

    def count_embeddings(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def _vector_cache(self) -> _VectorCache:
        with self._lock:
            row_count = self.count_embeddings()
            if self._cache is not None and self._cache.row_count == row_count:
                return self._cache
            grouped: dict[int, tuple[list[str], list[np.ndarray]]] = {}
            rows = self.conn.execute(
                "SELECT e.chunk_id, e.dimension, e.vector_blob FROM embeddings e "
                "JOIN chunks c ON c.id = e.chunk_id ORDER BY e.rowid"
            ).fetchall()
            for row in rows:
                vector = blob_to_vector(row["vector_blob"])
                if vector.shape[0] != row["dimension"]:
                    log.warning("db.vector_dimension_mismatch", chunk_id=row["chunk_id"])
                    continue
                ids, vectors = grouped.setdefault(vector.shape[0], ([], []))
                ids.append(row["chunk_id"])
                vectors.append(vector)
            self._cache = _VectorCache(
                row_count=row_count,
                by_dimension={dim: (ids, np.vstack(vectors)) for dim, (ids, vectors) in grouped.items()},
            )
            return self._cache

    def find_similar(self, query_vector: np.ndarray | Sequence[float], k: int = 10) -> list[SearchResult]:
        """Rank stored chunks by cosine similarity to *query_vector*.

        Vectors of a different dimension are skipped. Ties keep storage order.

        Raises:
            ValueError: If *query_vector* is empty.
        """
        query = l2_normalize(query_vector)
        if query.size == 0:
            raise ValueError("query vector must not be empty")
        if k <= 0:
            return []
        entry = self._vector_cache().by_dimension.get(query.shape[0])
        if entry is None:
            return []
        chunk_ids, matrix = entry
        scores = matrix @ query
        order = np.argsort(-scores, kind="stable")[:k]
        ranked = [(chunk_ids[i], float(scores[i])) for i in order]

        placeholders = ",".join("?" * len(ranked))
        rows = self.conn.execute(
            f"""
            SELECT c.id, c.repo_id, c.text, r.name, r.full_name, r.description, r.html_url,
                   r.language, r.topics_json, r.updated_at
            FROM chunks c JOIN repos r ON r.id = c.repo_id
            WHERE c.id IN ({placeholders})
            """,
            [cid for cid, _ in ranked],
        ).fetchall()
        by_id = {r["id"]: r for r in rows}

        results: list[SearchResult] = []
        for chunk_id, score in ranked:
            row = by_id.get(chunk_id)
            if row is None:
                continue
            results.append(
                SearchResult(
                    chunk_id=chunk_id,
                    repo_id=row["repo_id"],
                    score=score,
                    text=row["text"],
                    repo_name=row["name"],
                    repo_full_name=row["full_name"],
                    repo_description=row["description"],
                    repo_url=row["html_url"],
                    language=row["language"],
                    topics=_load_topics(row["topics_json"]),
                    updated_at=row["updated_at"],
                )
            )
        return results

    # ------------------------------------------------------------------
    # Index metadata
    # ------------------------------------------------------------------

    def upsert_index_meta(self, key: str, value: str) -> None:
        if not key:
            raise ValueError("index_meta key must not be empty")
        stamp = self._clock()
        self._write(
            "index_meta",
            lambda conn: conn.execute(
                "INSERT INTO index_meta (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (key, value, stamp),
            ),
        )
        self._after_write()

    def get_index_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM index_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def list_index_meta(self) -> dict[str, str]:
        return {
            r["key"]: r["value"]
            for r in self.conn.execute("SELECT key, value FROM index_meta ORDER BY key").fetchall()
        }

    def _record_store_meta(self) -> None:
        policy = self._tracker.policy
        stamp = self._clock()
        values = [
            ("checkpoint_every_embeddings", str(policy.every_embeddings)),
            ("checkpoint_every_ms", str(policy.every_ms)),
        ]

        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO index_meta (key, value, updated_at) VALUES ('db_created_at', ?, ?)",
                (str(stamp), stamp),
            )
            conn.executemany(
                "INSERT INTO index_meta (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                [(k, v, stamp) for k, v in values],
            )

        self._write("index_meta", work)
        self._after_write()

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    def upsert_chat_session(self, session: ChatSession) -> ChatSession:
        """Insert a session or update its query and ``updated_at``."""
        if not session.id.strip():
            raise ValueError("chat session id must not be empty")
        stamp = self._clock()
        created = session.created_at if session.created_at > 0 else stamp
        updated = session.updated_at if session.updated_at > 0 else created
        stored = dataclasses.replace(session, id=session.id.strip(), created_at=created, updated_at=updated)
        self._write(
            "chat_sessions",
            lambda conn: conn.execute(
                """
                INSERT INTO chat_sessions (id, query, created_at, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    query = excluded.query,
                    updated_at = MAX(chat_sessions.updated_at, excluded.updated_at)
                """,
                (stored.id, stored.query, stored.created_at, stored.updated_at),
            ),
        )
        self._after_write()
        return stored

    def get_chat_session(self, session_id: str) -> ChatSession | None:
        row = self.conn.execute(
            "SELECT id, query, created_at, updated_at FROM chat_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def list_chat_sessions(self, limit: int | None = None) -> list[ChatSession]:
        """Return sessions, most recently updated first."""
        sql = "SELECT id, query, created_at, updated_at FROM chat_sessions ORDER BY updated_at DESC, rowid DESC"
        params: tuple[int, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [_row_to_session(r) for r in self.conn.execute(sql, params).fetchall()]

    def next_chat_sequence(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) + 1 FROM chat_messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row[0])

    def add_chat_message(self, message: ChatMessage) -> ChatMessage:
        """Persist a chat message, creating its session if it does not exist.

        Returns:
            The stored message with ``sequence`` and ``created_at`` filled in.

        Raises:
            ValueError: On blank ids, an unknown role, a sequence below 1, or a
                sequence already used by another message of the session.
        """
        message_id = message.id.strip()
        session_id = message.session_id.strip()
        if not message_id or not session_id:
            raise ValueError("chat message id and session_id must not be empty")
        if message.role not in CHAT_ROLES:
            raise ValueError(f"invalid chat role {message.role!r}")
        if message.sequence is not None and message.sequence < 1:
            raise ValueError(f"chat message sequence must be >= 1, got {message.sequence}")
        created = message.created_at if message.created_at > 0 else self._clock()

        def work(conn: sqlite3.Connection) -> ChatMessage:
            conn.execute(
                "INSERT INTO chat_sessions (id, query, created_at, updated_at) "
                "SELECT ?, ?, ?, ? WHERE NOT EXISTS (SELECT 1 FROM chat_sessions WHERE id = ?)",
                (session_id, message.content if message.role == "user" else "", created, created, session_id),
            )
            sequence = message.sequence
            if sequence is None:
                sequence = int(
                    conn.execute(
                        "SELECT COALESCE(MAX(sequence), 0) + 1 FROM chat_messages "
                        "WHERE session_id = ? AND id <> ?",
                        (session_id, message_id),
                    ).fetchone()[0]
                )
            else:
                clash = conn.execute(
                    "SELECT id FROM chat_messages WHERE session_id = ? AND sequence = ? AND id <> ?",
                    (session_id, sequence, message_id),
                ).fetchone()
                if clash is not None:
                    raise ValueError(
                        f"sequence {sequence} already used by message {clash['id']} in session {session_id}"
                    )
            conn.execute(
                """
                INSERT INTO chat_messages (id, session_id, role, content, sequence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    session_id = excluded.session_id,
                    role = excluded.role,
                    content = excluded.content,
                    sequence = excluded.sequence
                """,
                (message_id, session_id, message.role, message.content, sequence, created),
            )
            conn.execute(
                "UPDATE chat_sessions SET updated_at = MAX(updated_at, ?) WHERE id = ?",
                (created, session_id),
            )
            return dataclasses.replace(
                message, id=message_id, session_id=session_id, sequence=sequence, created_at=created
            )

        stored = self._write("chat_messages", work)
        self._after_write()
        return stored

    def list_chat_messages(self, session_id: str) -> list[ChatMessage]:
        """Return the messages of a session ordered by (created_at, sequence)."""
        rows = self.conn.execute(
            "SELECT id, session_id, role, content, sequence, created_at FROM chat_messages "
            "WHERE session_id = ? ORDER BY created_at, sequence, rowid",
            (session_id,),
        ).fetchall()
        return [
            ChatMessage(
                id=r["id"],
                session_id=r["session_id"],
                role=r["role"],
                content=r["content"],
                sequence=r["sequence"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_all_data(self) -> None:
        """Delete every row from every table and export the empty store."""

        def work(conn: sqlite3.Connection) -> None:
            for table in ("embeddings", "chunks", "repos", "chat_messages", "chat_sessions", "index_meta"):
                conn.execute(f"DELETE FROM {table}")  # noqa: S608

        self._write("repos", work)
        self._cache = None
        self._tracker.reset()
        self._record_store_meta()
        log.info("db.cleared", path=str(self._db.db_path))


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _load_topics(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(t) for t in value] if isinstance(value, list) else []


def _row_to_repo(row: sqlite3.Row) -> Repo:
    return Repo(
        id=row["id"],
        full_name=row["full_name"],
        name=row["name"],
        html_url=row["html_url"],
        updated_at=row["updated_at"],
        description=row["description"],
        topics=_load_topics(row["topics_json"]),
        language=row["language"],
        stars=row["stars"],
        forks=row["forks"],
        readme_url=row["readme_url"],
        readme_text=row["readme_text"],
        checksum=row["checksum"],
        last_synced_at=row["last_synced_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        repo_id=row["repo_id"],
        text=row["text"],
        source=row["source"],
        created_at=row["created_at"],
    )


def _row_to_session(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        query=row["query"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
