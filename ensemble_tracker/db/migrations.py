"""
Simple sequential schema migration bootstrap.

This is NOT a full migration framework (no Alembic, no down migrations):

  1. A ``schema_versions`` table tracks applied migration IDs.
  2. Each migration is a Python function taking a ``sqlite3.Connection``.
  3. ``run_migrations()`` applies any migrations not yet recorded.

Migrations are applied in dictionary insertion order. The initial schema is
applied via ``apply_schema()`` in ``schema.py`` before any migrations run.
``initialize_database()`` does both.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from ensemble_tracker.db.schema import apply_schema

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_versions`` tracking table if it does not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row[0] for row in rows}


def _mark_applied(conn: sqlite3.Connection, version_id: str, description: str) -> None:
    conn.execute(
        "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
        (version_id, description),
    )
    conn.commit()


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_add_portfolio_snapshots(conn: sqlite3.Connection) -> None:
    """Add portfolio_snapshots: the baseline for realised-return health scoring."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS portfolio_snapshots (
            snapshot_id   INTEGER PRIMARY KEY AUTOINCREMENT,
            portfolio_id  INTEGER NOT NULL REFERENCES portfolios(portfolio_id),
            total_value   REAL    NOT NULL,
            total_cost    REAL    NOT NULL,
            return_pct    REAL    NOT NULL,
            taken_at      TEXT    NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_snapshots_portfolio_time
            ON portfolio_snapshots(portfolio_id, taken_at);
    """)


def migration_0002_add_model_response_log(conn: sqlite3.Connection) -> None:
    """Add model_response_log: optional audit trail of individual model verdicts."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS model_response_log (
            log_id       INTEGER PRIMARY KEY AUTOINCREMENT,
            ticker       TEXT    NOT NULL,
            model_id     TEXT    NOT NULL,
            action       TEXT    NOT NULL,
            confidence   REAL    NOT NULL,
            risk_label   TEXT,
            latency_ms   REAL    NOT NULL,
            reasoning    TEXT,
            logged_at    TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );
        CREATE INDEX IF NOT EXISTS idx_model_response_log_model
            ON model_response_log(model_id, logged_at);
    """)


MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_portfolio_snapshots": (
        migration_0001_add_portfolio_snapshots,
        "Add portfolio_snapshots table",
    ),
    "0002_model_response_log": (
        migration_0002_add_model_response_log,
        "Add model_response_log audit table",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _get_applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            logger.debug("Migration %s already applied; skipping.", version_id)
            continue

        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            _mark_applied(conn, version_id, description)
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    return count


def initialize_database(conn: sqlite3.Connection) -> int:
    """Apply the base schema and any pending migrations.

    Returns:
        Number of migrations applied in this call.
    """
    apply_schema(conn)
    return run_migrations(conn)
