"""
Performance analyzer: reduces a user's trackers to a ``PerformanceSnapshot``.

Definitions (all rates and returns in percent)
----------------------------------------------
accuracy_rate      = correct / (correct + incorrect) × 100   (0 when no evaluations)
<action>_accuracy  = same, restricted to that action          (0 when none)
follow_rate        = followed / total × 100                   (0 when no trackers)
returns            = over trackers that were followed AND evaluated
pending            = trackers not yet EVALUATED
missed value       = Σ missed_return / 100 × recommended_price × quantity,
                     where an unknown (zero) quantity counts as one unit
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional, Sequence

from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.models.performance import PerformanceSnapshot
from ensemble_tracker.models.recommendation import Tracker
from ensemble_tracker.taxonomy.action_taxonomy import Action

logger = logging.getLogger(__name__)


def _rate(numerator: int, denominator: int) -> float:
    return numerator / denominator * 100.0 if denominator else 0.0


def _action_accuracy(trackers: Sequence[Tracker], action: Action) -> float:
    scored = [t for t in trackers if t.action == action and t.is_evaluated and t.accuracy is not None]
    return _rate(sum(1 for t in scored if t.accuracy), len(scored))


def summarize(trackers: Sequence[Tracker], user_id: Optional[str] = None) -> PerformanceSnapshot:
    """Pure reduction of ``trackers``; an empty sequence yields all zeros."""
    total = len(trackers)
    followed = sum(1 for t in trackers if t.was_followed is True)
    ignored = sum(1 for t in trackers if t.was_followed is False)
    evaluated = [t for t in trackers if t.is_evaluated and t.accuracy is not None]
    correct = sum(1 for t in evaluated if t.accuracy)
    incorrect = len(evaluated) - correct

    returns = [
        t.actual_return
        for t in evaluated
        if t.was_followed is True and t.actual_return is not None
    ]
    missed = [t for t in trackers if t.missed_return is not None]
    missed_value = sum(
        t.missed_return / 100.0 * t.recommended_price * (t.position_quantity or 1.0)  # type: ignore[operator]
        for t in missed
    )

    return PerformanceSnapshot(
        user_id=user_id,
        total_recommendations=total,
        followed_count=followed,
        ignored_count=ignored,
        correct_predictions=correct,
        incorrect_predictions=incorrect,
        pending_predictions=total - sum(1 for t in trackers if t.is_evaluated),
        accuracy_rate=_rate(correct, correct + incorrect),
        buy_accuracy=_action_accuracy(trackers, Action.BUY),
        sell_accuracy=_action_accuracy(trackers, Action.SELL),
        hold_accuracy=_action_accuracy(trackers, Action.HOLD),
        follow_rate=_rate(followed, total),
        average_return=(sum(returns) / len(returns)) if returns else 0.0,
        total_return=sum(returns),
        best_return=max(returns) if returns else None,
        worst_return=min(returns) if returns else None,
        missed_opportunity_count=len(missed),
        missed_opportunity_pct=sum(t.missed_return for t in missed),  # type: ignore[misc]
        missed_opportunity_value=missed_value,
    )


class PerformanceAnalyzer:
    """Reads a user's trackers and summarises them."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._trackers = TrackerRepository(conn)

    def summarize(self, user_id: str) -> PerformanceSnapshot:
        trackers = self._trackers.for_user(user_id)
        snapshot = summarize(trackers, user_id=user_id)
        logger.debug(
            "Performance for %s: %d trackers, accuracy %.1f%%",
            user_id, snapshot.total_recommendations, snapshot.accuracy_rate,
        )
        return snapshot

    def recent_trackers(self, user_id: str, limit: int = 10) -> list[Tracker]:
        """Latest ``limit`` trackers for a user, newest first."""
        return self._trackers.recent_for_user(user_id, limit)
