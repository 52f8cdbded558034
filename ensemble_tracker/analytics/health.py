"""
Portfolio health score.

    return_score = clamp(50 + return_scale × return_pct, 0, 100)
    score        = clamp(w_r × return_score + w_f × follow_rate
                         + w_d × diversification, 0, 100)

return_pct      : current value vs. the latest snapshot's value (cost basis
                  when the portfolio has never been snapshotted).
follow_rate     : followed / total × 100 over the portfolio's trackers.
diversification : distinct tickers / positions × 100.

Weights come from ``HealthConfig`` (default 0.5 / 0.3 / 0.2). Every weight
is non-negative, so the score never decreases when any input increases.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Mapping, Optional, Sequence

from ensemble_tracker.analytics.performance import summarize
from ensemble_tracker.config import HealthConfig
from ensemble_tracker.db.repositories.portfolio_repo import (
    MarketPriceRepository,
    PortfolioRepository,
    SnapshotRepository,
)
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.exceptions import NotFound
from ensemble_tracker.models.performance import PortfolioHealth
from ensemble_tracker.models.portfolio import Holding, PortfolioSnapshot
from ensemble_tracker.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def return_score(return_pct: float, return_scale: float = 2.5) -> float:
    return _clamp(50.0 + return_scale * return_pct)


def compute_health_score(
    return_pct: float,
    follow_rate: float,
    diversification: float,
    config: HealthConfig,
) -> float:
    """Weighted 0–100 blend of the three components."""
    score = (
        config.return_weight * return_score(return_pct, config.return_scale)
        + config.follow_weight * _clamp(follow_rate)
        + config.diversification_weight * _clamp(diversification)
    )
    return _clamp(score)


def diversification_pct(holdings: Sequence[Holding]) -> float:
    if not holdings:
        return 0.0
    return len({h.ticker for h in holdings}) / len(holdings) * 100.0


def value_holdings(
    holdings: Sequence[Holding],
    prices: Mapping[str, Optional[float]],
) -> tuple[float, float]:
    """Return ``(total_value, total_cost)``.

    A holding without an observed price is valued at its purchase price; a
    holding without a purchase price is costed at its current price.
    """
    total_value = 0.0
    total_cost = 0.0
    for h in holdings:
        price = prices.get(h.ticker) or h.purchase_price or 0.0
        total_value += h.quantity * price
        total_cost += h.quantity * (h.purchase_price or price)
    return total_value, total_cost


def _pct_change(current: float, baseline: float) -> float:
    return (current - baseline) / baseline * 100.0 if baseline else 0.0


def build_advice(return_pct: float, follow_rate: float, diversification: float, position_count: int) -> list[str]:
    advice: list[str] = []
    if position_count == 0:
        return ["Portfolio has no positions; add holdings to receive recommendations."]
    if return_pct < 0:
        advice.append("Portfolio value is below its last baseline; review the weakest positions.")
    if follow_rate < 50:
        advice.append("Fewer than half of recommendations were acted on; review open recommendations.")
    if diversification < 50 or position_count < 3:
        advice.append("Holdings are concentrated; consider spreading risk across more tickers.")
    if not advice:
        advice.append("Portfolio health looks good; keep monitoring recommendations.")
    return advice


class PortfolioHealthAnalyzer:
    """Computes health scores and takes valuation snapshots for a portfolio."""

    def __init__(self, conn: sqlite3.Connection, config: HealthConfig) -> None:
        self._portfolios = PortfolioRepository(conn)
        self._prices = MarketPriceRepository(conn)
        self._snapshots = SnapshotRepository(conn)
        self._trackers = TrackerRepository(conn)
        self._config = config

    def _holdings(self, portfolio_id: int) -> list[Holding]:
        if self._portfolios.get_by_id(portfolio_id) is None:
            raise NotFound("Portfolio", portfolio_id)
        return self._portfolios.get_holdings(portfolio_id)

    def _valuation(self, holdings: Sequence[Holding]) -> tuple[float, float]:
        prices = {t: self._prices.latest_price(t) for t in {h.ticker for h in holdings}}
        return value_holdings(holdings, prices)

    def health(self, portfolio_id: int) -> PortfolioHealth:
        """Score one portfolio.

        Raises:
            NotFound: Unknown ``portfolio_id``.
        """
        holdings = self._holdings(portfolio_id)
        total_value, total_cost = self._valuation(holdings)
        snapshot = self._snapshots.latest(portfolio_id)
        baseline = snapshot.total_value if snapshot else total_cost
        ret_pct = _pct_change(total_value, baseline)

        follow_rate = summarize(self._trackers.for_portfolio(portfolio_id)).follow_rate
        diversification = diversification_pct(holdings)
        score = compute_health_score(ret_pct, follow_rate, diversification, self._config)

        logger.info("Portfolio %d health %.1f (return %.2f%%)", portfolio_id, score, ret_pct)
        return PortfolioHealth(
            portfolio_id=portfolio_id,
            score=score,
            return_pct=ret_pct,
            return_score=return_score(ret_pct, self._config.return_scale),
            follow_rate=follow_rate,
            diversification=diversification,
            position_count=len(holdings),
            advice=build_advice(ret_pct, follow_rate, diversification, len(holdings)),
        )

    def snapshot(self, portfolio_id: int, taken_at: Optional[datetime] = None) -> PortfolioSnapshot:
        """Persist the current valuation as the next health baseline.

        Raises:
            NotFound: Unknown ``portfolio_id``.
        """
        holdings = self._holdings(portfolio_id)
        total_value, total_cost = self._valuation(holdings)
        snap = PortfolioSnapshot(
            portfolio_id=portfolio_id,
            total_value=total_value,
            total_cost=total_cost,
            return_pct=_pct_change(total_value, total_cost),
            taken_at=taken_at or utcnow(),
        )
        snapshot_id = self._snapshots.insert(snap)
        return snap.model_copy(update={"snapshot_id": snapshot_id})
