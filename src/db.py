"""Shared SQLite helpers: WAL mode, row_factory defaults, write transactions."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def wal_connect(db_path: str | Path, row_factory: bool = False) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: str | Path, rollback_only: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside an explicit ``BEGIN IMMEDIATE`` transaction.

    The write lock is taken up front so two writers never interleave their
    read-check-write sequences. Any exception rolls everything back.

    Args:
        db_path: Path to database file.
        rollback_only: Always roll back on exit (dry runs / previews).
    """
    conn = wal_connect(db_path, row_factory=True)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        if rollback_only:
            conn.execute("ROLLBACK")
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()
