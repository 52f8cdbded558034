"""
Tests for ensemble_tracker/analytics/health.py.

What we test
------------
compute_health_score():
  - Default weights blend 50/30/20; score clamped to [0, 100].
  - Monotonically non-decreasing in each input.
value_holdings() / diversification_pct(): valuation fallbacks.
PortfolioHealthAnalyzer:
  - Return measured against cost basis, then against the latest snapshot.
  - Unknown portfolio → NotFound.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from ensemble_tracker.analytics.health import (
    PortfolioHealthAnalyzer,
    compute_health_score,
    diversification_pct,
    return_score,
    value_holdings,
)
from ensemble_tracker.config import HealthConfig
from ensemble_tracker.db.repositories.portfolio_repo import (
    MarketPriceRepository,
    PortfolioRepository,
)
from ensemble_tracker.exceptions import NotFound
from ensemble_tracker.models.portfolio import Holding, MarketPrice, Portfolio

CFG = HealthConfig()


class TestComputeHealthScore:
    def test_neutral_inputs(self):
        # return 0% → return_score 50
        assert compute_health_score(0.0, 0.0, 0.0, CFG) == pytest.approx(25.0)

    def test_weighted_blend(self):
        score = compute_health_score(4.0, 50.0, 100.0, CFG)
        assert score == pytest.approx(0.5 * 60.0 + 0.3 * 50.0 + 0.2 * 100.0)

    def test_clamped(self):
        assert compute_health_score(1000.0, 100.0, 100.0, CFG) == 100.0
        assert compute_health_score(-1000.0, 0.0, 0.0, CFG) == 0.0

    def test_return_score_clamped(self):
        assert return_score(-50.0) == 0.0
        assert return_score(50.0) == 100.0

    @pytest.mark.parametrize("component", [0, 1, 2])
    def test_monotonic_in_each_input(self, component):
        base = [-5.0, 40.0, 60.0]
        previous = None
        for step in range(0, 60, 5):
            inputs = list(base)
            inputs[component] += step
            score = compute_health_score(*inputs, CFG)
            if previous is not None:
                assert score >= previous
            previous = score

    def test_custom_weights(self):
        cfg = HealthConfig(return_weight=0.0, follow_weight=1.0, diversification_weight=0.0)
        assert compute_health_score(-20.0, 70.0, 0.0, cfg) == pytest.approx(70.0)


class TestValuation:
    def test_diversification(self):
        holdings = [
            Holding(portfolio_id=1, ticker="AAPL", quantity=1),
            Holding(portfolio_id=1, ticker="AAPL", quantity=2),
            Holding(portfolio_id=1, ticker="MSFT", quantity=1),
            Holding(portfolio_id=1, ticker="NVDA", quantity=1),
        ]
        assert diversification_pct(holdings) == pytest.approx(75.0)
        assert diversification_pct([]) == 0.0

    def test_value_falls_back_to_purchase_price(self):
        holdings = [
            Holding(portfolio_id=1, ticker="AAPL", quantity=2, purchase_price=100.0),
            Holding(portfolio_id=1, ticker="MSFT", quantity=1, purchase_price=50.0),
            Holding(portfolio_id=1, ticker="NVDA", quantity=1),
        ]
        value, cost = value_holdings(holdings, {"AAPL": 110.0, "MSFT": None, "NVDA": 30.0})
        assert value == pytest.approx(220.0 + 50.0 + 30.0)
        assert cost == pytest.approx(200.0 + 50.0 + 30.0)


class TestPortfolioHealthAnalyzer:
    def _portfolio(self, conn) -> int:
        repo = PortfolioRepository(conn)
        pid = repo.insert(Portfolio(user_id="alice"))
        repo.add_holding(Holding(portfolio_id=pid, ticker="AAPL", quantity=10, purchase_price=100.0))
        repo.add_holding(Holding(portfolio_id=pid, ticker="MSFT", quantity=10, purchase_price=100.0))
        return pid

    def test_return_against_cost_basis(self, in_memory_db):
        pid = self._portfolio(in_memory_db)
        prices = MarketPriceRepository(in_memory_db)
        prices.insert(MarketPrice(ticker="AAPL", price=110.0, observed_at=T0))
        prices.insert(MarketPrice(ticker="MSFT", price=100.0, observed_at=T0))

        health = PortfolioHealthAnalyzer(in_memory_db, CFG).health(pid)
        assert health.return_pct == pytest.approx(5.0)
        assert health.return_score == pytest.approx(62.5)
        assert health.diversification == pytest.approx(100.0)
        assert health.follow_rate == 0.0
        assert health.position_count == 2
        assert health.score == pytest.approx(0.5 * 62.5 + 0.2 * 100.0)
        assert health.advice

    def test_return_against_latest_snapshot(self, in_memory_db):
        pid = self._portfolio(in_memory_db)
        prices = MarketPriceRepository(in_memory_db)
        prices.insert(MarketPrice(ticker="AAPL", price=110.0, observed_at=T0))
        analyzer = PortfolioHealthAnalyzer(in_memory_db, CFG)

        snap = analyzer.snapshot(pid, taken_at=T0)
        assert snap.snapshot_id is not None
        assert snap.total_value == pytest.approx(2100.0)
        assert snap.return_pct == pytest.approx(5.0)

        prices.insert(MarketPrice(ticker="AAPL", price=89.0, observed_at=T0 + timedelta(days=1)))
        health = analyzer.health(pid)
        assert health.return_pct == pytest.approx((1890.0 - 2100.0) / 2100.0 * 100.0)
        assert any("below" in line for line in health.advice)

    def test_empty_portfolio(self, in_memory_db):
        pid = PortfolioRepository(in_memory_db).insert(Portfolio(user_id="alice"))
        health = PortfolioHealthAnalyzer(in_memory_db, CFG).health(pid)
        assert health.position_count == 0
        assert health.return_pct == 0.0
        assert health.score == pytest.approx(25.0)

    def test_unknown_portfolio(self, in_memory_db):
        with pytest.raises(NotFound):
            PortfolioHealthAnalyzer(in_memory_db, CFG).health(42)
