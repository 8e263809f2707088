"""SQLite database setup, schema management and the bounded connection pool."""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
from pathlib import Path

from prpstore.errors import UNAVAILABLE, PersistenceError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
BUSY_TIMEOUT = 5.0  # seconds

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    goal TEXT,
    why TEXT,
    what TEXT,
    success_criteria TEXT,
    context_references TEXT,
    current_tree TEXT,
    desired_tree TEXT,
    known_gotchas TEXT,
    created_by TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES documents(id),
    item_order INTEGER NOT NULL CHECK (item_order > 0),
    description TEXT NOT NULL,
    file_path TEXT,
    pattern TEXT,
    pseudocode TEXT,
    status TEXT NOT NULL CHECK (status IN ('pending', 'in_progress', 'completed')),
    info TEXT NOT NULL DEFAULT '{}',
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    deleted_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    color TEXT,
    created_by TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS item_tags (
    item_id TEXT NOT NULL REFERENCES items(id),
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (item_id, tag_id)
);

CREATE TABLE IF NOT EXISTS document_tags (
    document_id TEXT NOT NULL REFERENCES documents(id),
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    created_at TIMESTAMP NOT NULL,
    PRIMARY KEY (document_id, tag_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_items_live_order
    ON items(document_id, item_order) WHERE deleted_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_items_document ON items(document_id);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);
CREATE INDEX IF NOT EXISTS idx_items_created ON items(created_at);
CREATE INDEX IF NOT EXISTS idx_item_tags_tag ON item_tags(tag_id);
CREATE INDEX IF NOT EXISTS idx_document_tags_tag ON document_tags(tag_id);
"""

FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS items_fts USING fts5(
    description,
    content='items',
    content_rowid='rowid'
);

-- Triggers to keep FTS index in sync
CREATE TRIGGER IF NOT EXISTS items_ai AFTER INSERT ON items BEGIN
    INSERT INTO items_fts(rowid, description) VALUES (new.rowid, new.description);
END;

CREATE TRIGGER IF NOT EXISTS items_ad AFTER DELETE ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, description)
    VALUES ('delete', old.rowid, old.description);
END;

CREATE TRIGGER IF NOT EXISTS items_au AFTER UPDATE OF description ON items BEGIN
    INSERT INTO items_fts(items_fts, rowid, description)
    VALUES ('delete', old.rowid, old.description);
    INSERT INTO items_fts(rowid, description) VALUES (new.rowid, new.description);
END;
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create or open a SQLite database with the prpstore schema.

    The connection runs in autocommit mode; transactions are opened
    explicitly by the persistence gateway.
    """
    conn = sqlite3.connect(
        str(db_path),
        timeout=BUSY_TIMEOUT,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.executescript(FTS_SQL)
    if conn.execute("PRAGMA user_version").fetchone()[0] != SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    return conn


class ConnectionPool:
    """A fixed-size pool of SQLite connections.

    Connections are opened lazily up to ``size``. When all of them are checked
    out, ``acquire`` waits at most ``timeout`` seconds and then fails with a
    PersistenceError rather than blocking indefinitely.
    """

    def __init__(self, db_path: Path, size: int = 5, timeout: float = 5.0) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self._db_path = Path(db_path)
        self._size = size
        self._timeout = timeout
        self._idle: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue()
        self._opened = 0
        self._lock = threading.Lock()
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise PersistenceError(UNAVAILABLE)
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        with self._lock:
            if self._opened < self._size:
                self._opened += 1
                try:
                    return get_connection(self._db_path)
                except sqlite3.Error as e:
                    self._opened -= 1
                    logger.error(f"Could not open database {self._db_path}: {e}")
                    raise PersistenceError(UNAVAILABLE) from e

        try:
            return self._idle.get(timeout=self._timeout)
        except queue.Empty:
            logger.warning(
                f"Connection pool exhausted ({self._size} in use) after {self._timeout}s"
            )
            raise PersistenceError(UNAVAILABLE) from None

    def release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            conn.close()
            return
        self._idle.put(conn)

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()
