"""
Repository for recommendation trackers.

Trackers are never deleted. State transitions go through
``update_transition()``, which only writes when the row is still in the
status the caller read, so two racing writers cannot both succeed.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from ensemble_tracker.db.repositories.base import (
    BaseRepository,
    from_db_bool,
    from_db_time,
    to_db_bool,
    to_db_time,
)
from ensemble_tracker.models.recommendation import Tracker
from ensemble_tracker.taxonomy.action_taxonomy import TrackerStatus

logger = logging.getLogger(__name__)


class TrackerRepository(BaseRepository):
    """Read/write access to ``recommendation_trackers``."""

    def insert(self, tracker: Tracker) -> int:
        """Insert a tracker and return its ``tracker_id``."""
        self.execute(
            """
            INSERT INTO recommendation_trackers (
                rec_id, user_id, portfolio_id, ticker, action,
                confidence_label, time_horizon, recommended_price,
                target_price, position_quantity, recommended_at, status,
                was_followed, action_price, followed_at, evaluated_at,
                closing_price, actual_return, missed_return, accuracy,
                target_reached
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                tracker.rec_id,
                tracker.user_id,
                tracker.portfolio_id,
                tracker.ticker,
                tracker.action,
                tracker.confidence_label,
                tracker.time_horizon,
                tracker.recommended_price,
                tracker.target_price,
                tracker.position_quantity,
                to_db_time(tracker.recommended_at),
                tracker.status,
                to_db_bool(tracker.was_followed),
                tracker.action_price,
                to_db_time(tracker.followed_at),
                to_db_time(tracker.evaluated_at),
                tracker.closing_price,
                tracker.actual_return,
                tracker.missed_return,
                to_db_bool(tracker.accuracy),
                to_db_bool(tracker.target_reached),
            ),
        )
        return self.last_insert_rowid()

    def update_transition(self, tracker: Tracker, expected_status: TrackerStatus) -> int:
        """Persist the mutable fields of ``tracker`` if the row is still ``expected_status``.

        Args:
            tracker: The tracker after the transition. ``tracker_id`` must be set.
            expected_status: Status the caller observed before transitioning.

        Returns:
            Number of rows updated (0 if another writer got there first).

        Raises:
            ValueError: If ``tracker.tracker_id`` is ``None``.
        """
        if tracker.tracker_id is None:
            raise ValueError("Cannot update a Tracker without a tracker_id.")
        cursor = self.execute(
            """
            UPDATE recommendation_trackers SET
                status         = ?,
                was_followed   = ?,
                action_price   = ?,
                followed_at    = ?,
                evaluated_at   = ?,
                closing_price  = ?,
                actual_return  = ?,
                missed_return  = ?,
                accuracy       = ?,
                target_reached = ?
            WHERE tracker_id = ? AND status = ?;
            """,
            (
                tracker.status,
                to_db_bool(tracker.was_followed),
                tracker.action_price,
                to_db_time(tracker.followed_at),
                to_db_time(tracker.evaluated_at),
                tracker.closing_price,
                tracker.actual_return,
                tracker.missed_return,
                to_db_bool(tracker.accuracy),
                to_db_bool(tracker.target_reached),
                tracker.tracker_id,
                expected_status,
            ),
        )
        return cursor.rowcount

    def get_by_id(self, tracker_id: int) -> Optional[Tracker]:
        row = self.fetchone(
            "SELECT * FROM recommendation_trackers WHERE tracker_id = ?;", (tracker_id,)
        )
        return _row_to_tracker(row) if row else None

    def get_by_rec_id(self, rec_id: int) -> Optional[Tracker]:
        row = self.fetchone(
            "SELECT * FROM recommendation_trackers WHERE rec_id = ?;", (rec_id,)
        )
        return _row_to_tracker(row) if row else None

    def for_user(self, user_id: str) -> list[Tracker]:
        """Fetch every tracker belonging to ``user_id``, oldest first."""
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_trackers
            WHERE user_id = ?
            ORDER BY recommended_at, tracker_id;
            """,
            (user_id,),
        )
        return [_row_to_tracker(r) for r in rows]

    def recent_for_user(self, user_id: str, limit: int = 10) -> list[Tracker]:
        """Fetch the ``limit`` most recent trackers for ``user_id``, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_trackers
            WHERE user_id = ?
            ORDER BY recommended_at DESC, tracker_id DESC
            LIMIT ?;
            """,
            (user_id, limit),
        )
        return [_row_to_tracker(r) for r in rows]

    def for_portfolio(self, portfolio_id: int) -> list[Tracker]:
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_trackers
            WHERE portfolio_id = ?
            ORDER BY recommended_at, tracker_id;
            """,
            (portfolio_id,),
        )
        return [_row_to_tracker(r) for r in rows]

    def evaluated_by_user(self) -> dict[str, list[Tracker]]:
        """Group every EVALUATED tracker by owner; users without one are absent."""
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_trackers
            WHERE status = ?
            ORDER BY user_id, tracker_id;
            """,
            (TrackerStatus.EVALUATED,),
        )
        grouped: dict[str, list[Tracker]] = {}
        for row in rows:
            grouped.setdefault(row["user_id"], []).append(_row_to_tracker(row))
        return grouped

    def awaiting_evaluation(self) -> list[Tracker]:
        """Fetch FOLLOWED and IGNORED trackers, oldest first."""
        rows = self.fetchall(
            """
            SELECT * FROM recommendation_trackers
            WHERE status IN (?, ?)
            ORDER BY recommended_at, tracker_id;
            """,
            (TrackerStatus.FOLLOWED, TrackerStatus.IGNORED),
        )
        return [_row_to_tracker(r) for r in rows]


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_tracker(row: sqlite3.Row) -> Tracker:
    return Tracker(
        tracker_id=row["tracker_id"],
        rec_id=row["rec_id"],
        user_id=row["user_id"],
        portfolio_id=row["portfolio_id"],
        ticker=row["ticker"],
        action=row["action"],
        confidence_label=row["confidence_label"],
        time_horizon=row["time_horizon"],
        recommended_price=row["recommended_price"],
        target_price=row["target_price"],
        position_quantity=row["position_quantity"],
        recommended_at=from_db_time(row["recommended_at"]),
        status=row["status"],
        was_followed=from_db_bool(row["was_followed"]),
        action_price=row["action_price"],
        followed_at=from_db_time(row["followed_at"]),
        evaluated_at=from_db_time(row["evaluated_at"]),
        closing_price=row["closing_price"],
        actual_return=row["actual_return"],
        missed_return=row["missed_return"],
        accuracy=from_db_bool(row["accuracy"]),
        target_reached=from_db_bool(row["target_reached"]),
    )
