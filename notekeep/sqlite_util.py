"""
SQLite connection helpers shared by both storage engines.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import StorageError, StorageErrorKind


def connect(db_path: Optional[Path]) -> sqlite3.Connection:
    """
    Open a connection with manual transaction control.

    Args:
        db_path: Database file, or None for a private in-memory database
    """
    if db_path is None:
        target = ":memory:"
    else:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        target = str(db_path)
    # isolation_level=None gives us manual transaction control
    # so bulk writes can use BEGIN IMMEDIATE ... COMMIT
    conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    if db_path is not None:
        conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        conn.execute("PRAGMA busy_timeout=5000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside BEGIN IMMEDIATE; roll back on any exception."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def io_errors(action: str, record_id: Optional[str] = None) -> Iterator[None]:
    """Translate sqlite3 errors into StorageError(IO_FAILURE)."""
    try:
        yield
    except sqlite3.Error as e:
        raise StorageError(
            StorageErrorKind.IO_FAILURE, f"{action} failed: {e}", record_id
        ) from e
