"""
Tests for ensemble_tracker/analytics/performance.py.

What we test
------------
summarize():
  - Zero trackers → all zeros, best/worst None, no division error.
  - 10 trackers, 6 correct / 2 incorrect / 2 pending → accuracy 75%.
  - Per-action accuracy; follow rate; returns only over followed+evaluated.
  - Missed opportunity count, percent and currency value.
PerformanceAnalyzer:
  - Reads only the requested user's trackers; recent_trackers ordering.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, make_evaluated, make_tracker
from ensemble_tracker.analytics.performance import PerformanceAnalyzer, summarize
from ensemble_tracker.db.repositories.portfolio_repo import PortfolioRepository
from ensemble_tracker.db.repositories.recommendation_repo import RecommendationRepository
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.models.portfolio import Portfolio
from ensemble_tracker.models.recommendation import Recommendation
from ensemble_tracker.taxonomy.action_taxonomy import Action, TrackerStatus


class TestSummarize:
    def test_zero_trackers(self):
        snap = summarize([])
        assert snap.total_recommendations == 0
        assert snap.accuracy_rate == 0.0
        assert snap.follow_rate == 0.0
        assert snap.average_return == 0.0
        assert snap.best_return is None
        assert snap.worst_return is None
        assert snap.missed_opportunity_value == 0.0

    def test_six_two_two_scenario(self):
        trackers = (
            [make_evaluated(True) for _ in range(6)]
            + [make_evaluated(False, actual_return=-5.0) for _ in range(2)]
            + [make_tracker() for _ in range(2)]
        )
        snap = summarize(trackers, user_id="alice")
        assert snap.user_id == "alice"
        assert snap.total_recommendations == 10
        assert snap.correct_predictions == 6
        assert snap.incorrect_predictions == 2
        assert snap.pending_predictions == 2
        assert snap.evaluated_count == 8
        assert snap.accuracy_rate == pytest.approx(75.0)

    def test_pending_counts_followed_but_unevaluated(self):
        followed = make_tracker(status=TrackerStatus.FOLLOWED, was_followed=True)
        snap = summarize([followed, make_evaluated(True)])
        assert snap.pending_predictions == 1
        assert snap.followed_count == 2

    def test_per_action_accuracy(self):
        trackers = [
            make_evaluated(True, action=Action.BUY),
            make_evaluated(False, action=Action.BUY, actual_return=-3.0),
            make_evaluated(True, action=Action.SELL),
        ]
        snap = summarize(trackers)
        assert snap.buy_accuracy == pytest.approx(50.0)
        assert snap.sell_accuracy == pytest.approx(100.0)
        assert snap.hold_accuracy == 0.0

    def test_follow_rate(self):
        trackers = [
            make_evaluated(True, followed=True),
            make_evaluated(True, followed=False),
            make_tracker(),
            make_tracker(),
        ]
        snap = summarize(trackers)
        assert snap.followed_count == 1
        assert snap.ignored_count == 1
        assert snap.follow_rate == pytest.approx(25.0)

    def test_returns_only_over_followed_evaluated(self):
        trackers = [
            make_evaluated(True, followed=True, actual_return=10.0),
            make_evaluated(False, followed=True, actual_return=-4.0),
            make_evaluated(True, followed=False, actual_return=50.0),
        ]
        snap = summarize(trackers)
        assert snap.average_return == pytest.approx(3.0)
        assert snap.total_return == pytest.approx(6.0)
        assert snap.best_return == pytest.approx(10.0)
        assert snap.worst_return == pytest.approx(-4.0)

    def test_missed_opportunities(self):
        trackers = [
            make_evaluated(True, followed=False, actual_return=10.0, position_quantity=5.0),
            make_evaluated(True, followed=False, actual_return=20.0, position_quantity=0.0),
            make_evaluated(False, followed=False, actual_return=-8.0),
        ]
        snap = summarize(trackers)
        assert snap.missed_opportunity_count == 2
        assert snap.missed_opportunity_pct == pytest.approx(30.0)
        # 10% of 100 × 5 units + 20% of 100 × 1 unit (unknown quantity)
        assert snap.missed_opportunity_value == pytest.approx(50.0 + 20.0)


# ── PerformanceAnalyzer ────────────────────────────────────────────────────────

def _store(conn, user_id: str, offset_days: int, **tracker_fields) -> int:
    portfolio_id = PortfolioRepository(conn).insert(Portfolio(user_id=user_id))
    rec = Recommendation(
        user_id=user_id,
        portfolio_id=portfolio_id,
        ticker="AAPL",
        action=Action.BUY,
        confidence_label="HIGH",
        current_price=100.0,
        risk_label="LOW",
        time_horizon="30d",
        reasoning="Test.",
        created_at=T0 + timedelta(days=offset_days),
    )
    rec_id = RecommendationRepository(conn).insert(rec)
    tracker = make_tracker(
        tracker_id=None,
        rec_id=rec_id,
        user_id=user_id,
        portfolio_id=portfolio_id,
        recommended_at=rec.created_at,
        **tracker_fields,
    )
    return TrackerRepository(conn).insert(tracker)


class TestPerformanceAnalyzer:
    def test_summarize_reads_only_user(self, in_memory_db):
        _store(in_memory_db, "alice", 0)
        _store(in_memory_db, "alice", 1)
        _store(in_memory_db, "bob", 2)
        snap = PerformanceAnalyzer(in_memory_db).summarize("alice")
        assert snap.total_recommendations == 2
        assert snap.pending_predictions == 2

    def test_unknown_user_is_empty(self, in_memory_db):
        snap = PerformanceAnalyzer(in_memory_db).summarize("nobody")
        assert snap.total_recommendations == 0

    def test_recent_trackers_newest_first(self, in_memory_db):
        ids = [_store(in_memory_db, "alice", d) for d in (0, 5, 2)]
        recent = PerformanceAnalyzer(in_memory_db).recent_trackers("alice", limit=2)
        assert [t.tracker_id for t in recent] == [ids[1], ids[2]]
