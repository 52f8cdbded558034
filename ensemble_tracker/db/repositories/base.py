"""
Base repository providing shared SQLite execution helpers.

All repositories inherit from ``BaseRepository`` and receive a
``sqlite3.Connection`` at construction time. The connection is assumed
to be opened and managed by the caller (typically via ``get_connection()``).

Design:
  - No ORM: all SQL is explicit and lives in repository methods.
  - Repositories speak Pydantic models, not raw dicts.
  - Every ``sqlite3.Error`` surfaces as ``DataAccessFailure``; no retries.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from ensemble_tracker.exceptions import DataAccessFailure
from ensemble_tracker.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


class BaseRepository:
    """Shared SQL execution helpers for all repository classes.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Cursor:
        """Execute a single SQL statement.

        Raises:
            DataAccessFailure: Wrapping the underlying ``sqlite3.Error``.
        """
        logger.debug("SQL: %s | params: %s", sql.strip(), params)
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise DataAccessFailure(str(exc)) from exc

    def fetchone(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> Optional[sqlite3.Row]:
        """Execute a query and return the first row, or ``None``."""
        return self.execute(sql, params).fetchone()

    def fetchall(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        return self.execute(sql, params).fetchall()

    def last_insert_rowid(self) -> int:
        """Return the rowid of the last successful INSERT."""
        row = self.fetchone("SELECT last_insert_rowid() AS rowid;")
        assert row is not None
        return int(row["rowid"])


# ── Column converters ─────────────────────────────────────────────────────────

def to_db_time(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so lexical ORDER BY matches chronological order.
    return ensure_utc(value).isoformat(timespec="microseconds") if value else None


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def to_db_bool(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(value)


def from_db_bool(value: Optional[int]) -> Optional[bool]:
    return None if value is None else bool(value)
