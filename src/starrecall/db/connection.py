"""SQLite connection layer: in-memory working store plus a stable file.

All reads and writes go to an in-memory connection. ``export()`` copies the
whole store to the stable file through the SQLite backup API (written to a
temporary sibling first, then atomically renamed), which is the checkpoint
boundary that survives process exit.
"""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path

from starrecall.logging import get_logger

log = get_logger(__name__)


class Database:
    """Per-user starrecall store.

    Args:
        db_path: Stable file the store is loaded from and exported to. ``None``
            keeps everything in memory and makes ``export()`` a no-op.
    """

    def __init__(self, db_path: Path | str | None) -> None:
        self.db_path = Path(db_path) if db_path is not None else None
        self._conn: sqlite3.Connection | None = None

    @property
    def storage_mode(self) -> str:
        return "file" if self.db_path is not None else "memory"

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not open; call connect() first.")
        return self._conn

    def connect(self) -> sqlite3.Connection:
        """Open the working store, loading the stable file when it exists.

        A stable file that SQLite cannot read is moved aside to
        ``<name>.corrupt`` and an empty store is started instead.
        """
        conn = _new_memory_connection()
        if self.db_path is not None and self.db_path.exists():
            try:
                _load_file_into(self.db_path, conn)
            except sqlite3.DatabaseError as exc:
                conn.close()
                quarantine = self.db_path.with_name(self.db_path.name + ".corrupt")
                os.replace(self.db_path, quarantine)
                log.warning("db.load_failed", path=str(self.db_path), quarantine=str(quarantine), error=str(exc))
                conn = _new_memory_connection()
        self._conn = conn
        return conn

    def export(self) -> bool:
        """Write the full working store to the stable file.

        Returns:
            True if a file was written, False in memory mode.
        """
        if self.db_path is None:
            return False
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.db_path.with_name(self.db_path.name + ".tmp")
        target = sqlite3.connect(tmp)
        try:
            self.conn.backup(target)
        finally:
            target.close()
        os.replace(tmp, self.db_path)
        return True

    def delete_stable_file(self) -> None:
        if self.db_path is not None:
            self.db_path.unlink(missing_ok=True)

    def reset(self) -> sqlite3.Connection:
        """Discard the working store and start an empty one."""
        self.close()
        self._conn = _new_memory_connection()
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> sqlite3.Connection:
        return self.connect()

    def __exit__(self, *args: object) -> None:
        self.close()


def _new_memory_connection() -> sqlite3.Connection:
    # isolation_level=None: transactions are opened explicitly with BEGIN.
    conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _load_file_into(path: Path, conn: sqlite3.Connection) -> None:
    source = sqlite3.connect(path)
    try:
        # Touch the schema so a non-database file fails here, not mid-backup.
        source.execute("SELECT count(*) FROM sqlite_master").fetchone()
        source.backup(conn)
    finally:
        source.close()
