"""
SQLite schema DDL: all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. portfolios               (no FKs)
  2. holdings                 (→ portfolios)
  3. market_prices            (no FKs)
  4. recommendations          (→ portfolios)
  5. recommendation_trackers  (→ recommendations, 1:1)

Later additions (portfolio snapshots, model response audit log) are applied
by ``migrations.run_migrations()``.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_PORTFOLIOS = """
CREATE TABLE IF NOT EXISTS portfolios (
    portfolio_id    INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         TEXT    NOT NULL,
    name            TEXT    NOT NULL DEFAULT 'Main',
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_HOLDINGS = """
CREATE TABLE IF NOT EXISTS holdings (
    holding_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id    INTEGER NOT NULL REFERENCES portfolios(portfolio_id),
    ticker          TEXT    NOT NULL,
    quantity        REAL    NOT NULL DEFAULT 0,
    purchase_price  REAL,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_holdings_portfolio
    ON holdings(portfolio_id);
"""

_DDL_MARKET_PRICES = """
CREATE TABLE IF NOT EXISTS market_prices (
    price_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    ticker          TEXT    NOT NULL,
    price           REAL    NOT NULL,
    observed_at     TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_market_prices_ticker_time
    ON market_prices(ticker, observed_at);
"""

_DDL_RECOMMENDATIONS = """
CREATE TABLE IF NOT EXISTS recommendations (
    rec_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id           TEXT    NOT NULL,
    portfolio_id      INTEGER NOT NULL REFERENCES portfolios(portfolio_id),
    ticker            TEXT    NOT NULL,
    action            TEXT    NOT NULL CHECK (action IN ('BUY', 'SELL', 'HOLD')),
    confidence_label  TEXT    NOT NULL,
    current_price     REAL    NOT NULL,
    target_price      REAL,
    risk_label        TEXT    NOT NULL,
    time_horizon      TEXT    NOT NULL,
    reasoning         TEXT    NOT NULL,
    consensus_level   REAL    NOT NULL DEFAULT 0,
    is_fallback       INTEGER NOT NULL DEFAULT 0,
    is_active         INTEGER NOT NULL DEFAULT 1,
    created_at        TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_recommendations_active
    ON recommendations(user_id, portfolio_id, ticker)
    WHERE is_active = 1;
"""

_DDL_TRACKERS = """
CREATE TABLE IF NOT EXISTS recommendation_trackers (
    tracker_id         INTEGER PRIMARY KEY AUTOINCREMENT,
    rec_id             INTEGER NOT NULL UNIQUE REFERENCES recommendations(rec_id),
    user_id            TEXT    NOT NULL,
    portfolio_id       INTEGER NOT NULL,
    ticker             TEXT    NOT NULL,
    action             TEXT    NOT NULL,
    confidence_label   TEXT    NOT NULL,
    time_horizon       TEXT    NOT NULL,
    recommended_price  REAL    NOT NULL,
    target_price       REAL,
    position_quantity  REAL    NOT NULL DEFAULT 0,
    recommended_at     TEXT    NOT NULL,
    status             TEXT    NOT NULL DEFAULT 'PENDING'
                       CHECK (status IN ('PENDING', 'FOLLOWED', 'IGNORED', 'EVALUATED')),
    was_followed       INTEGER,
    action_price       REAL,
    followed_at        TEXT,
    evaluated_at       TEXT,
    closing_price      REAL,
    actual_return      REAL,
    missed_return      REAL,
    accuracy           INTEGER,
    target_reached     INTEGER
);
CREATE INDEX IF NOT EXISTS idx_trackers_user_time
    ON recommendation_trackers(user_id, recommended_at);
CREATE INDEX IF NOT EXISTS idx_trackers_status
    ON recommendation_trackers(status);
"""

# ── Ordered list of all DDL to apply ──────────────────────────────────────────

_ALL_DDL: list[str] = [
    _DDL_PORTFOLIOS,
    _DDL_HOLDINGS,
    _DDL_MARKET_PRICES,
    _DDL_RECOMMENDATIONS,
    _DDL_TRACKERS,
]

# Table names for introspection / tests
ALL_TABLE_NAMES = [
    "portfolios",
    "holdings",
    "market_prices",
    "recommendations",
    "recommendation_trackers",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent; safe to call on an already-initialized database.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.debug("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the table names present in the database, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    """Return the index names present in the database, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
