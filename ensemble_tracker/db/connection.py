"""
SQLite connection management.

Provides a context manager ``get_connection()`` that:
  - Enables foreign key enforcement (OFF by default in SQLite).
  - Enables WAL journal mode so dashboard reads don't block tracker writes.
  - Sets a busy timeout to handle lock contention gracefully.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

Usage::

    from ensemble_tracker.db.connection import get_connection

    with get_connection("data/db/ensemble_tracker.db") as conn:
        TrackerRepository(conn).get_by_id(42)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from ensemble_tracker.exceptions import DataAccessFailure

logger = logging.getLogger(__name__)


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The connection is committed on clean exit and rolled back on exception.
    The database file (and any parent directories) are created if they do
    not already exist.

    Args:
        db_path: Path to the SQLite database file. Use ``":memory:"`` for
            in-memory databases (useful in tests).
        wal_mode: If ``True``, enable WAL journal mode.
        busy_timeout_ms: Milliseconds to wait when the database is locked.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        DataAccessFailure: If the database cannot be opened or configured,
            or the final commit fails.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
        conn.row_factory = sqlite3.Row
        # These pragmas must be set before any DML/DDL
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
        if wal_mode:
            conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error as exc:
        raise DataAccessFailure(f"Cannot open database {db_path}: {exc}") from exc

    try:
        yield conn
        conn.commit()

    except sqlite3.Error as exc:
        conn.rollback()
        raise DataAccessFailure(str(exc)) from exc

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()
