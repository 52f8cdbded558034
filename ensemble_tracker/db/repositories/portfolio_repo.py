"""
Repositories for portfolios, holdings, observed market prices and
portfolio valuation snapshots.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from ensemble_tracker.db.repositories.base import BaseRepository, from_db_time, to_db_time
from ensemble_tracker.models.portfolio import (
    Holding,
    MarketPrice,
    Portfolio,
    PortfolioSnapshot,
)

logger = logging.getLogger(__name__)


class PortfolioRepository(BaseRepository):
    """Read/write access to ``portfolios`` and ``holdings``."""

    def insert(self, portfolio: Portfolio) -> int:
        """Insert a portfolio and return its ``portfolio_id``."""
        self.execute(
            "INSERT INTO portfolios (user_id, name, is_active) VALUES (?, ?, ?);",
            (portfolio.user_id, portfolio.name, int(portfolio.is_active)),
        )
        return self.last_insert_rowid()

    def get_by_id(self, portfolio_id: int) -> Optional[Portfolio]:
        row = self.fetchone(
            "SELECT * FROM portfolios WHERE portfolio_id = ?;", (portfolio_id,)
        )
        return _row_to_portfolio(row) if row else None

    def get_for_user(self, user_id: str) -> list[Portfolio]:
        """Fetch all active portfolios owned by ``user_id``."""
        rows = self.fetchall(
            """
            SELECT * FROM portfolios
            WHERE user_id = ? AND is_active = 1
            ORDER BY portfolio_id;
            """,
            (user_id,),
        )
        return [_row_to_portfolio(r) for r in rows]

    def add_holding(self, holding: Holding) -> int:
        """Insert a holding and return its ``holding_id``."""
        self.execute(
            """
            INSERT INTO holdings (portfolio_id, ticker, quantity, purchase_price)
            VALUES (?, ?, ?, ?);
            """,
            (
                holding.portfolio_id,
                holding.ticker,
                holding.quantity,
                holding.purchase_price,
            ),
        )
        return self.last_insert_rowid()

    def get_holdings(self, portfolio_id: int) -> list[Holding]:
        """Fetch a portfolio's holdings in insertion order."""
        rows = self.fetchall(
            "SELECT * FROM holdings WHERE portfolio_id = ? ORDER BY holding_id;",
            (portfolio_id,),
        )
        return [_row_to_holding(r) for r in rows]


class MarketPriceRepository(BaseRepository):
    """Read/write access to ``market_prices``."""

    def insert(self, price: MarketPrice) -> int:
        self.execute(
            "INSERT INTO market_prices (ticker, price, observed_at) VALUES (?, ?, ?);",
            (price.ticker, price.price, to_db_time(price.observed_at)),
        )
        return self.last_insert_rowid()

    def latest(self, ticker: str) -> Optional[MarketPrice]:
        """Return the most recently observed price for ``ticker``, or ``None``."""
        row = self.fetchone(
            """
            SELECT * FROM market_prices
            WHERE ticker = ?
            ORDER BY observed_at DESC, price_id DESC
            LIMIT 1;
            """,
            (ticker.upper(),),
        )
        return _row_to_price(row) if row else None

    def latest_price(self, ticker: str) -> Optional[float]:
        """Shortcut for ``latest(ticker).price``."""
        latest = self.latest(ticker)
        return latest.price if latest else None

    def latest_between(
        self, ticker: str, after: datetime, until: datetime
    ) -> Optional[MarketPrice]:
        """Return the latest price observed in ``(after, until]``, or ``None``."""
        row = self.fetchone(
            """
            SELECT * FROM market_prices
            WHERE ticker = ? AND observed_at > ? AND observed_at <= ?
            ORDER BY observed_at DESC, price_id DESC
            LIMIT 1;
            """,
            (ticker.upper(), to_db_time(after), to_db_time(until)),
        )
        return _row_to_price(row) if row else None


class SnapshotRepository(BaseRepository):
    """Read/write access to ``portfolio_snapshots``."""

    def insert(self, snapshot: PortfolioSnapshot) -> int:
        self.execute(
            """
            INSERT INTO portfolio_snapshots (
                portfolio_id, total_value, total_cost, return_pct, taken_at
            ) VALUES (?, ?, ?, ?, ?);
            """,
            (
                snapshot.portfolio_id,
                snapshot.total_value,
                snapshot.total_cost,
                snapshot.return_pct,
                to_db_time(snapshot.taken_at),
            ),
        )
        return self.last_insert_rowid()

    def latest(self, portfolio_id: int) -> Optional[PortfolioSnapshot]:
        """Return the most recent snapshot of a portfolio, or ``None``."""
        row = self.fetchone(
            """
            SELECT * FROM portfolio_snapshots
            WHERE portfolio_id = ?
            ORDER BY taken_at DESC, snapshot_id DESC
            LIMIT 1;
            """,
            (portfolio_id,),
        )
        return _row_to_snapshot(row) if row else None


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_portfolio(row: sqlite3.Row) -> Portfolio:
    return Portfolio(
        portfolio_id=row["portfolio_id"],
        user_id=row["user_id"],
        name=row["name"],
        is_active=bool(row["is_active"]),
    )


def _row_to_holding(row: sqlite3.Row) -> Holding:
    return Holding(
        holding_id=row["holding_id"],
        portfolio_id=row["portfolio_id"],
        ticker=row["ticker"],
        quantity=row["quantity"],
        purchase_price=row["purchase_price"],
    )


def _row_to_price(row: sqlite3.Row) -> MarketPrice:
    return MarketPrice(
        ticker=row["ticker"],
        price=row["price"],
        observed_at=from_db_time(row["observed_at"]),
    )


def _row_to_snapshot(row: sqlite3.Row) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        snapshot_id=row["snapshot_id"],
        portfolio_id=row["portfolio_id"],
        total_value=row["total_value"],
        total_cost=row["total_cost"],
        return_pct=row["return_pct"],
        taken_at=from_db_time(row["taken_at"]),
    )
