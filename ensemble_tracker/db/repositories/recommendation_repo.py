"""
Repository for user-facing recommendations.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from ensemble_tracker.db.repositories.base import (
    BaseRepository,
    from_db_time,
    to_db_time,
)
from ensemble_tracker.models.recommendation import Recommendation

logger = logging.getLogger(__name__)


class RecommendationRepository(BaseRepository):
    """Read/write access to ``recommendations``."""

    def insert(self, rec: Recommendation) -> int:
        """Insert a recommendation and return its ``rec_id``.

        Args:
            rec: The ``Recommendation`` to persist (``rec_id`` is ignored).

        Returns:
            The newly assigned ``rec_id``.
        """
        self.execute(
            """
            INSERT INTO recommendations (
                user_id, portfolio_id, ticker, action, confidence_label,
                current_price, target_price, risk_label, time_horizon,
                reasoning, consensus_level, is_fallback, is_active, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                rec.user_id,
                rec.portfolio_id,
                rec.ticker,
                rec.action,
                rec.confidence_label,
                rec.current_price,
                rec.target_price,
                rec.risk_label,
                rec.time_horizon,
                rec.reasoning,
                rec.consensus_level,
                int(rec.is_fallback),
                int(rec.is_active),
                to_db_time(rec.created_at),
            ),
        )
        return self.last_insert_rowid()

    def get_by_id(self, rec_id: int) -> Optional[Recommendation]:
        row = self.fetchone("SELECT * FROM recommendations WHERE rec_id = ?;", (rec_id,))
        return _row_to_recommendation(row) if row else None

    def get_active(self, user_id: str, portfolio_id: int) -> list[Recommendation]:
        """Fetch the active recommendations for a portfolio, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM recommendations
            WHERE user_id = ? AND portfolio_id = ? AND is_active = 1
            ORDER BY created_at DESC, rec_id DESC;
            """,
            (user_id, portfolio_id),
        )
        return [_row_to_recommendation(r) for r in rows]

    def deactivate_active(self, user_id: str, portfolio_id: int, ticker: str) -> int:
        """Mark prior active recommendations for a ticker as superseded.

        Returns:
            Number of recommendations deactivated.
        """
        cursor = self.execute(
            """
            UPDATE recommendations SET is_active = 0
            WHERE user_id = ? AND portfolio_id = ? AND ticker = ? AND is_active = 1;
            """,
            (user_id, portfolio_id, ticker.upper()),
        )
        return cursor.rowcount


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_recommendation(row: sqlite3.Row) -> Recommendation:
    return Recommendation(
        rec_id=row["rec_id"],
        user_id=row["user_id"],
        portfolio_id=row["portfolio_id"],
        ticker=row["ticker"],
        action=row["action"],
        confidence_label=row["confidence_label"],
        current_price=row["current_price"],
        target_price=row["target_price"],
        risk_label=row["risk_label"],
        time_horizon=row["time_horizon"],
        reasoning=row["reasoning"],
        consensus_level=row["consensus_level"],
        is_fallback=bool(row["is_fallback"]),
        is_active=bool(row["is_active"]),
        created_at=from_db_time(row["created_at"]),
    )
