"""
Peer comparison: where a user stands among everyone with evaluated history.

The cohort is every user with at least one EVALUATED tracker. Each member is
summarised with the ``performance.summarize`` definitions and keyed on
``(accuracy_rate, average_return)``.

    percentile = 100 × |members with key ≤ user key| / cohort_size
    rank       = 1 + |members with key > user key|        (1 = best)

Users outside the cohort get ``percentile=None``.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from typing import Mapping, Sequence

from ensemble_tracker.analytics.performance import summarize
from ensemble_tracker.config import PeerConfig
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.models.performance import PeerComparison, PerformanceSnapshot
from ensemble_tracker.models.recommendation import Tracker

logger = logging.getLogger(__name__)


def _key(snapshot: PerformanceSnapshot) -> tuple[float, float]:
    return (snapshot.accuracy_rate, snapshot.average_return)


def compare_to_cohort(
    user_id: str,
    cohort: Mapping[str, Sequence[Tracker]],
    top_fraction: float = 0.1,
) -> PeerComparison:
    """Rank ``user_id`` within ``cohort`` (user id → that user's trackers)."""
    snapshots = {uid: summarize(trackers, user_id=uid) for uid, trackers in cohort.items()}
    members = sorted(snapshots.values(), key=_key)
    n = len(members)
    if n == 0:
        return PeerComparison(user_id=user_id)

    top_count = max(1, math.ceil(n * top_fraction))
    top = members[-top_count:]

    base = dict(
        user_id=user_id,
        cohort_size=n,
        cohort_average_accuracy=sum(m.accuracy_rate for m in members) / n,
        cohort_average_return=sum(m.average_return for m in members) / n,
        top_performer_return=sum(m.average_return for m in top) / len(top),
    )

    mine = snapshots.get(user_id)
    if mine is None:
        return PeerComparison(**base)

    user_key = _key(mine)
    at_or_below = sum(1 for m in members if _key(m) <= user_key)
    above = n - at_or_below
    return PeerComparison(
        **base,
        percentile=100.0 * at_or_below / n,
        rank=1 + above,
        user_accuracy=mine.accuracy_rate,
        user_average_return=mine.average_return,
    )


class PeerComparator:
    """Loads the evaluated cohort and ranks one user within it."""

    def __init__(self, conn: sqlite3.Connection, config: PeerConfig) -> None:
        self._trackers = TrackerRepository(conn)
        self._config = config

    def compare(self, user_id: str) -> PeerComparison:
        cohort = self._trackers.evaluated_by_user()
        result = compare_to_cohort(user_id, cohort, self._config.top_fraction)
        logger.debug(
            "Peer comparison for %s: percentile=%s cohort=%d",
            user_id, result.percentile, result.cohort_size,
        )
        return result
