"""
Recommendation factory: pure construction of a ``Recommendation`` and its
PENDING ``Tracker`` from an ``EnsembleResult`` and the position it is about.

No I/O. The caller stores the recommendation first, then the tracker with
the assigned ``rec_id``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from ensemble_tracker.config import TrackingConfig
from ensemble_tracker.models.recommendation import PositionContext, Recommendation, Tracker
from ensemble_tracker.models.verdict import EnsembleResult
from ensemble_tracker.taxonomy.action_taxonomy import (
    Action,
    ConfidenceLabel,
    RiskLabel,
    TrackerStatus,
)
from ensemble_tracker.utils.time_utils import parse_horizon_days, utcnow


class RecommendationFactory:
    """Builds recommendation/tracker pairs.

    Args:
        config: Supplies the default horizon and the fallback advisory text.
    """

    def __init__(self, config: TrackingConfig) -> None:
        self._config = config

    def create(
        self,
        user_id: str,
        portfolio_id: int,
        ticker: str,
        position: PositionContext,
        result: EnsembleResult,
        time_horizon: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Recommendation, Tracker]:
        """Build a recommendation from a consensus result."""
        rec = Recommendation(
            user_id=user_id,
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            action=result.final_action,
            confidence_label=result.confidence_label,
            current_price=position.current_price,
            target_price=result.target_price,
            risk_label=result.risk_label,
            time_horizon=self._horizon(time_horizon),
            reasoning=result.reasoning,
            consensus_level=result.consensus_level,
            is_fallback=False,
            created_at=now or utcnow(),
        )
        return rec, self._tracker_for(rec, position)

    def create_fallback(
        self,
        user_id: str,
        portfolio_id: int,
        ticker: str,
        position: PositionContext,
        time_horizon: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> tuple[Recommendation, Tracker]:
        """Build the HOLD / LOW confidence advisory issued when no model answered."""
        rec = Recommendation(
            user_id=user_id,
            portfolio_id=portfolio_id,
            ticker=ticker.upper(),
            action=Action.HOLD,
            confidence_label=ConfidenceLabel.LOW,
            current_price=position.current_price,
            target_price=None,
            risk_label=RiskLabel.MEDIUM,
            time_horizon=self._horizon(time_horizon),
            reasoning=self._config.fallback_message,
            consensus_level=0.0,
            is_fallback=True,
            created_at=now or utcnow(),
        )
        return rec, self._tracker_for(rec, position)

    def _horizon(self, time_horizon: Optional[str]) -> str:
        horizon = time_horizon or self._config.default_time_horizon
        parse_horizon_days(horizon)
        return horizon

    @staticmethod
    def _tracker_for(rec: Recommendation, position: PositionContext) -> Tracker:
        return Tracker(
            rec_id=rec.rec_id,
            user_id=rec.user_id,
            portfolio_id=rec.portfolio_id,
            ticker=rec.ticker,
            action=rec.action,
            confidence_label=rec.confidence_label,
            time_horizon=rec.time_horizon,
            recommended_price=rec.current_price,
            target_price=rec.target_price,
            position_quantity=position.quantity,
            recommended_at=rec.created_at,
            status=TrackerStatus.PENDING,
        )
