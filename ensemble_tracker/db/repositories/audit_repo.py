"""
Repository for the per-model verdict audit log.
"""

from __future__ import annotations

import logging
from typing import Any

from ensemble_tracker.db.repositories.base import BaseRepository
from ensemble_tracker.models.verdict import ModelVerdict

logger = logging.getLogger(__name__)


class ModelResponseLogRepository(BaseRepository):
    """Append-only access to ``model_response_log``."""

    def insert(self, ticker: str, verdict: ModelVerdict) -> int:
        self.execute(
            """
            INSERT INTO model_response_log (
                ticker, model_id, action, confidence, risk_label,
                latency_ms, reasoning
            ) VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                ticker,
                verdict.model_id,
                verdict.action,
                verdict.confidence,
                verdict.risk,
                verdict.latency_ms,
                verdict.reasoning,
            ),
        )
        return self.last_insert_rowid()

    def model_stats(self) -> list[dict[str, Any]]:
        """Return per-model response count and average latency/confidence."""
        rows = self.fetchall(
            """
            SELECT model_id,
                   COUNT(*)        AS responses,
                   AVG(latency_ms) AS avg_latency_ms,
                   AVG(confidence) AS avg_confidence
            FROM model_response_log
            GROUP BY model_id
            ORDER BY model_id;
            """
        )
        return [dict(r) for r in rows]
