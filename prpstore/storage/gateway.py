"""Scoped transactions over the connection pool."""

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Callable, TypeVar

from prpstore.errors import (
    CONSTRAINT,
    UNAVAILABLE,
    OperationCancelled,
    PersistenceError,
)
from prpstore.storage.db import ConnectionPool
from prpstore.storage.repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PersistenceGateway:
    """Runs a body inside exactly one transaction on a pooled connection.

    Commits when the body returns, rolls back when it raises (or when the
    caller cancelled before commit), and always hands the connection back to
    the pool. sqlite3 driver errors leave this class classified as
    PersistenceError; their text is logged only.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def close(self) -> None:
        self._pool.close()

    def run(
        self,
        body: Callable[[Repository], T],
        write: bool = True,
        cancelled: threading.Event | None = None,
        label: str = "transaction",
    ) -> T:
        conn = self._pool.acquire()
        try:
            return self._run_in_transaction(conn, body, write, cancelled, label)
        finally:
            self._pool.release(conn)

    def _run_in_transaction(
        self,
        conn: sqlite3.Connection,
        body: Callable[[Repository], T],
        write: bool,
        cancelled: threading.Event | None,
        label: str,
    ) -> T:
        try:
            # Writers take the database write lock before the body runs.
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            result = body(Repository(conn))
            if cancelled is not None and cancelled.is_set():
                raise OperationCancelled()
            conn.execute("COMMIT")
            if cancelled is not None and cancelled.is_set():
                # The caller already received an error for this call.
                logger.warning(f"{label} committed after its caller gave up")
            return result
        except BaseException as e:
            self._rollback(conn)
            if isinstance(e, sqlite3.IntegrityError):
                logger.warning(f"Constraint violation: {e}")
                raise PersistenceError(CONSTRAINT) from e
            if isinstance(e, (sqlite3.ProgrammingError, sqlite3.InterfaceError)):
                raise
            if isinstance(e, sqlite3.DatabaseError):
                logger.warning(f"Database unavailable: {e}")
                raise PersistenceError(UNAVAILABLE) from e
            raise

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            return
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback failed: {e}")
