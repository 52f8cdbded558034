"""Tests for repository round-trip operations using in-memory SQLite."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, make_tracker
from ensemble_tracker.db.repositories.audit_repo import ModelResponseLogRepository
from ensemble_tracker.db.repositories.base import BaseRepository
from ensemble_tracker.db.repositories.portfolio_repo import (
    MarketPriceRepository,
    PortfolioRepository,
    SnapshotRepository,
)
from ensemble_tracker.db.repositories.recommendation_repo import RecommendationRepository
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.exceptions import DataAccessFailure
from ensemble_tracker.models.portfolio import Holding, MarketPrice, Portfolio, PortfolioSnapshot
from ensemble_tracker.models.recommendation import Recommendation
from ensemble_tracker.models.verdict import ModelVerdict
from ensemble_tracker.taxonomy.action_taxonomy import (
    Action,
    ConfidenceLabel,
    RiskLabel,
    TrackerStatus,
)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _portfolio(conn, user_id: str = "alice") -> int:
    return PortfolioRepository(conn).insert(Portfolio(user_id=user_id))


def _recommendation(portfolio_id: int, ticker: str = "AAPL", user_id: str = "alice") -> Recommendation:
    return Recommendation(
        user_id=user_id,
        portfolio_id=portfolio_id,
        ticker=ticker,
        action=Action.BUY,
        confidence_label=ConfidenceLabel.HIGH,
        current_price=100.0,
        target_price=120.0,
        risk_label=RiskLabel.LOW,
        time_horizon="90d",
        reasoning="Two of three models agree.",
        consensus_level=2 / 3,
        created_at=T0,
    )


def _stored_tracker(conn, user_id: str = "alice", **fields) -> int:
    pid = _portfolio(conn, user_id)
    rec_id = RecommendationRepository(conn).insert(_recommendation(pid, user_id=user_id))
    tracker = make_tracker(tracker_id=None, rec_id=rec_id, user_id=user_id, portfolio_id=pid, **fields)
    return TrackerRepository(conn).insert(tracker)


class TestBaseRepository:
    def test_sqlite_error_wrapped(self, in_memory_db):
        with pytest.raises(DataAccessFailure):
            BaseRepository(in_memory_db).execute("SELECT * FROM missing_table;")


class TestPortfolioRepository:
    def test_round_trip(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        pid = repo.insert(Portfolio(user_id="alice", name="Retirement"))
        portfolio = repo.get_by_id(pid)
        assert portfolio.user_id == "alice"
        assert portfolio.name == "Retirement"
        assert repo.get_for_user("alice") == [portfolio]
        assert repo.get_by_id(999) is None

    def test_holdings(self, in_memory_db):
        repo = PortfolioRepository(in_memory_db)
        pid = repo.insert(Portfolio(user_id="alice"))
        repo.add_holding(Holding(portfolio_id=pid, ticker="aapl", quantity=3, purchase_price=90.0))
        repo.add_holding(Holding(portfolio_id=pid, ticker="MSFT", quantity=1))
        holdings = repo.get_holdings(pid)
        assert [h.ticker for h in holdings] == ["AAPL", "MSFT"]
        assert holdings[0].purchase_price == 90.0
        assert holdings[1].purchase_price is None


class TestMarketPriceRepository:
    def test_latest(self, in_memory_db):
        repo = MarketPriceRepository(in_memory_db)
        repo.insert(MarketPrice(ticker="AAPL", price=100.0, observed_at=T0 + timedelta(days=2)))
        repo.insert(MarketPrice(ticker="AAPL", price=90.0, observed_at=T0))
        assert repo.latest_price("aapl") == 100.0
        assert repo.latest("AAPL").observed_at == T0 + timedelta(days=2)
        assert repo.latest_price("MSFT") is None

    def test_latest_between_excludes_start_includes_end(self, in_memory_db):
        repo = MarketPriceRepository(in_memory_db)
        for days, price in ((0, 100.0), (5, 105.0), (10, 110.0)):
            repo.insert(MarketPrice(ticker="AAPL", price=price, observed_at=T0 + timedelta(days=days)))

        assert repo.latest_between("AAPL", T0, T0 + timedelta(days=5)).price == 105.0
        assert repo.latest_between("aapl", T0, T0 + timedelta(days=7)).price == 105.0
        assert repo.latest_between("AAPL", T0 + timedelta(days=10), T0 + timedelta(days=20)) is None
        assert repo.latest_between("AAPL", T0 - timedelta(days=1), T0 - timedelta(hours=1)) is None


class TestSnapshotRepository:
    def test_latest(self, in_memory_db):
        pid = _portfolio(in_memory_db)
        repo = SnapshotRepository(in_memory_db)
        for days, value in [(0, 1000.0), (3, 1200.0)]:
            repo.insert(PortfolioSnapshot(
                portfolio_id=pid, total_value=value, total_cost=1000.0,
                return_pct=(value - 1000.0) / 10.0, taken_at=T0 + timedelta(days=days),
            ))
        assert repo.latest(pid).total_value == 1200.0
        assert repo.latest(pid + 1) is None


class TestRecommendationRepository:
    def test_round_trip(self, in_memory_db):
        pid = _portfolio(in_memory_db)
        repo = RecommendationRepository(in_memory_db)
        original = _recommendation(pid)
        rec_id = repo.insert(original)
        stored = repo.get_by_id(rec_id)
        assert stored.model_dump() == original.model_copy(update={"rec_id": rec_id}).model_dump()

    def test_deactivate_active(self, in_memory_db):
        pid = _portfolio(in_memory_db)
        repo = RecommendationRepository(in_memory_db)
        repo.insert(_recommendation(pid, "AAPL"))
        repo.insert(_recommendation(pid, "MSFT"))
        assert repo.deactivate_active("alice", pid, "aapl") == 1
        assert [r.ticker for r in repo.get_active("alice", pid)] == ["MSFT"]
        assert repo.deactivate_active("alice", pid, "AAPL") == 0


class TestTrackerRepository:
    def test_round_trip(self, in_memory_db):
        tracker_id = _stored_tracker(in_memory_db)
        repo = TrackerRepository(in_memory_db)
        tracker = repo.get_by_id(tracker_id)
        assert tracker.status == TrackerStatus.PENDING
        assert tracker.recommended_at == T0
        assert repo.get_by_rec_id(tracker.rec_id).tracker_id == tracker_id

    def test_one_tracker_per_recommendation(self, in_memory_db):
        tracker_id = _stored_tracker(in_memory_db)
        repo = TrackerRepository(in_memory_db)
        duplicate = repo.get_by_id(tracker_id).model_copy(update={"tracker_id": None})
        with pytest.raises(DataAccessFailure):
            repo.insert(duplicate)

    def test_update_transition_guarded_by_status(self, in_memory_db):
        tracker_id = _stored_tracker(in_memory_db)
        repo = TrackerRepository(in_memory_db)
        followed = repo.get_by_id(tracker_id).model_copy(
            update={"status": TrackerStatus.FOLLOWED, "was_followed": True, "followed_at": T0}
        )
        assert repo.update_transition(followed, TrackerStatus.PENDING) == 1
        assert repo.update_transition(followed, TrackerStatus.PENDING) == 0
        stored = repo.get_by_id(tracker_id)
        assert stored.status == TrackerStatus.FOLLOWED
        assert stored.was_followed is True

    def test_user_queries(self, in_memory_db):
        repo = TrackerRepository(in_memory_db)
        first = _stored_tracker(in_memory_db, recommended_at=T0)
        second = _stored_tracker(in_memory_db, recommended_at=T0 + timedelta(days=1))
        _stored_tracker(in_memory_db, user_id="bob")
        assert [t.tracker_id for t in repo.for_user("alice")] == [first, second]
        assert [t.tracker_id for t in repo.recent_for_user("alice", 1)] == [second]

    def test_cohort_and_awaiting_queries(self, in_memory_db):
        repo = TrackerRepository(in_memory_db)
        _stored_tracker(
            in_memory_db, user_id="alice", status=TrackerStatus.EVALUATED,
            was_followed=True, evaluated_at=T0, accuracy=True, actual_return=2.0,
        )
        ignored = _stored_tracker(in_memory_db, user_id="bob")
        repo.update_transition(
            repo.get_by_id(ignored).model_copy(
                update={"status": TrackerStatus.IGNORED, "was_followed": False}
            ),
            TrackerStatus.PENDING,
        )
        _stored_tracker(in_memory_db, user_id="carol")

        assert list(repo.evaluated_by_user()) == ["alice"]
        assert [t.tracker_id for t in repo.awaiting_evaluation()] == [ignored]


class TestModelResponseLogRepository:
    def test_stats(self, in_memory_db):
        repo = ModelResponseLogRepository(in_memory_db)
        repo.insert("AAPL", ModelVerdict(model_id="m1", action=Action.BUY, confidence=0.8, latency_ms=100))
        repo.insert("MSFT", ModelVerdict(model_id="m1", action=Action.SELL, confidence=0.6, latency_ms=300))
        stats = repo.model_stats()
        assert stats == [
            {"model_id": "m1", "responses": 2, "avg_latency_ms": 200.0, "avg_confidence": pytest.approx(0.7)}
        ]
