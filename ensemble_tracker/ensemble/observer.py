"""
Observers notified with each verdict and consensus result.

Observers are injected into ``EnsembleAggregator``. They are side channels
only: the aggregator catches and logs anything an observer raises, so an
audit-table outage can never change a recommendation.
"""

from __future__ import annotations

import logging
from typing import Protocol

from ensemble_tracker.db.connection import get_connection
from ensemble_tracker.db.repositories.audit_repo import ModelResponseLogRepository
from ensemble_tracker.models.verdict import EnsembleResult, ModelVerdict

logger = logging.getLogger(__name__)


class VerdictObserver(Protocol):
    def on_verdict(self, ticker: str, verdict: ModelVerdict) -> None: ...

    def on_result(self, result: EnsembleResult) -> None: ...


class LoggingObserver:
    """Logs each verdict at DEBUG and each consensus at INFO."""

    def on_verdict(self, ticker: str, verdict: ModelVerdict) -> None:
        logger.debug(
            "%s | %s → %s (confidence=%.2f, %.0f ms)",
            ticker, verdict.model_id, verdict.action,
            verdict.confidence, verdict.latency_ms,
        )

    def on_result(self, result: EnsembleResult) -> None:
        logger.info(
            "%s | consensus %s (%s confidence, %s risk, %.0f%% agreement, %d model(s), %.0f ms)",
            result.ticker,
            result.final_action,
            result.confidence_label,
            result.risk_label,
            result.consensus_level * 100,
            len(result.responses),
            result.processing_time_ms,
        )


class ModelResponseLogObserver:
    """Appends every received verdict to ``model_response_log``.

    Args:
        db_path: SQLite database path (schema and migrations already applied).
        wal_mode: Passed through to ``get_connection``.
        busy_timeout_ms: Passed through to ``get_connection``.
    """

    def __init__(self, db_path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    def on_verdict(self, ticker: str, verdict: ModelVerdict) -> None:
        with get_connection(self.db_path, self.wal_mode, self.busy_timeout_ms) as conn:
            ModelResponseLogRepository(conn).insert(ticker, verdict)

    def on_result(self, result: EnsembleResult) -> None:
        pass
