"""
Outcome recorder: the tracker state machine.

    PENDING ──record_action──▶ FOLLOWED | IGNORED ──evaluate──▶ EVALUATED

Scoring (``score_outcome``, pure)
---------------------------------
    raw           = (closing − recommended) / recommended × 100
    actual_return = raw for BUY/HOLD, −raw for SELL
    accuracy      = actual_return ≥ −tolerance_pct
    missed_return = actual_return, only when the user ignored a call that
                    was accurate and profitable (actual_return > 0)
    target_reached: BUY/HOLD closing ≥ target; SELL closing ≤ target;
                    ``None`` when the recommendation had no target.

Serialization
-------------
At most one transition per tracker is in flight. Inside a process a
``TrackerLocks`` registry hands out one lock per tracker id. Across
processes the UPDATE is guarded on the status that was read, so the loser of
a race updates zero rows and gets ``InvalidState``.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generator, Optional

from ensemble_tracker.config import TrackingConfig
from ensemble_tracker.db.repositories.portfolio_repo import MarketPriceRepository
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.exceptions import InvalidState, NotFound
from ensemble_tracker.models.recommendation import Tracker
from ensemble_tracker.taxonomy.action_taxonomy import Action, TrackerStatus, can_transition
from ensemble_tracker.utils.time_utils import horizon_elapsed, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeScore:
    """Result of scoring one tracker against a closing price.

    Attributes:
        actual_return: Direction-adjusted return in percent.
        accuracy: Whether the call was right within tolerance.
        missed_return: Profit forgone by ignoring the call, else ``None``.
        target_reached: Whether the target was crossed, ``None`` without a target.
    """

    actual_return: float
    accuracy: bool
    missed_return: Optional[float]
    target_reached: Optional[bool]


def score_outcome(tracker: Tracker, closing_price: float, tolerance_pct: float = 1.0) -> OutcomeScore:
    """Score a FOLLOWED or IGNORED tracker against ``closing_price``."""
    if closing_price <= 0:
        raise ValueError(f"closing_price must be > 0, got {closing_price}.")

    raw = (closing_price - tracker.recommended_price) / tracker.recommended_price * 100.0
    actual_return = -raw if tracker.action == Action.SELL else raw
    accuracy = actual_return >= -tolerance_pct

    missed_return: Optional[float] = None
    if tracker.was_followed is False and accuracy and actual_return > 0:
        missed_return = actual_return

    target_reached: Optional[bool] = None
    if tracker.target_price is not None:
        if tracker.action == Action.SELL:
            target_reached = closing_price <= tracker.target_price
        else:
            target_reached = closing_price >= tracker.target_price

    return OutcomeScore(
        actual_return=actual_return,
        accuracy=accuracy,
        missed_return=missed_return,
        target_reached=target_reached,
    )


class TrackerLocks:
    """Lazily created per-tracker locks.

    Owned by whoever serializes transitions (the service instance); there is
    no process-wide registry. An entry lives only while some thread holds or
    waits on it.
    """

    def __init__(self) -> None:
        self._master_lock = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._users: dict[int, int] = {}

    def __len__(self) -> int:
        with self._master_lock:
            return len(self._locks)

    def _acquire_entry(self, tracker_id: int) -> threading.Lock:
        with self._master_lock:
            lock = self._locks.setdefault(tracker_id, threading.Lock())
            self._users[tracker_id] = self._users.get(tracker_id, 0) + 1
            return lock

    def _release_entry(self, tracker_id: int) -> None:
        with self._master_lock:
            self._users[tracker_id] -= 1
            if self._users[tracker_id] == 0:
                del self._users[tracker_id]
                del self._locks[tracker_id]

    @contextmanager
    def hold(self, tracker_id: int) -> Generator[None, None, None]:
        lock = self._acquire_entry(tracker_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(tracker_id)


def _transition(tracker: Tracker, **updates: Any) -> Tracker:
    """Return a re-validated copy of ``tracker`` with ``updates`` applied."""
    return Tracker.model_validate({**tracker.model_dump(), **updates})


class OutcomeRecorder:
    """Applies tracker transitions over one open connection.

    Each transition is committed before its tracker lock is released.

    Args:
        conn: Open SQLite connection.
        config: Supplies ``tolerance_pct``.
        locks: Shared lock registry; a private one is created when omitted.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: TrackingConfig,
        locks: Optional[TrackerLocks] = None,
    ) -> None:
        self.conn = conn
        self._config = config
        self._locks = locks or TrackerLocks()
        self._trackers = TrackerRepository(conn)

    def _load(self, tracker_id: int) -> Tracker:
        tracker = self._trackers.get_by_id(tracker_id)
        if tracker is None:
            raise NotFound("Tracker", tracker_id)
        return tracker

    def _persist(self, updated: Tracker, expected: TrackerStatus, operation: str) -> Tracker:
        if self._trackers.update_transition(updated, expected) == 0:
            self.conn.rollback()
            current = self._load(updated.tracker_id)  # type: ignore[arg-type]
            raise InvalidState(updated.tracker_id, current.status, operation)  # type: ignore[arg-type]
        self.conn.commit()
        return updated

    def record_action(
        self,
        tracker_id: int,
        followed: bool,
        action_price: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Tracker:
        """Record whether the user acted on the recommendation.

        Raises:
            NotFound: Unknown ``tracker_id``.
            InvalidState: The tracker is no longer PENDING.
            ValueError: ``action_price`` is not positive.
        """
        if action_price is not None and action_price <= 0:
            raise ValueError(f"action_price must be > 0, got {action_price}.")

        target = TrackerStatus.FOLLOWED if followed else TrackerStatus.IGNORED
        with self._locks.hold(tracker_id):
            tracker = self._load(tracker_id)
            if not can_transition(tracker.status, target):
                raise InvalidState(tracker_id, tracker.status, "record action")

            updated = _transition(
                tracker,
                status=target,
                was_followed=followed,
                action_price=action_price,
                followed_at=now or utcnow(),
            )
            self._persist(updated, tracker.status, "record action")

        logger.info(
            "Tracker %d (%s %s) marked %s.", tracker_id, tracker.action, tracker.ticker, target
        )
        return updated

    def evaluate(
        self,
        tracker_id: int,
        closing_price: float,
        as_of: Optional[datetime] = None,
    ) -> Tracker:
        """Score a FOLLOWED or IGNORED tracker against ``closing_price``.

        Raises:
            NotFound: Unknown ``tracker_id``.
            InvalidState: The tracker is PENDING or already EVALUATED.
            ValueError: ``closing_price`` is not positive.
        """
        if closing_price <= 0:
            raise ValueError(f"closing_price must be > 0, got {closing_price}.")

        with self._locks.hold(tracker_id):
            tracker = self._load(tracker_id)
            if not can_transition(tracker.status, TrackerStatus.EVALUATED):
                raise InvalidState(tracker_id, tracker.status, "evaluate")

            score = score_outcome(tracker, closing_price, self._config.tolerance_pct)
            updated = _transition(
                tracker,
                status=TrackerStatus.EVALUATED,
                evaluated_at=as_of or utcnow(),
                closing_price=closing_price,
                actual_return=score.actual_return,
                accuracy=score.accuracy,
                missed_return=score.missed_return,
                target_reached=score.target_reached,
            )
            self._persist(updated, tracker.status, "evaluate")

        logger.info(
            "Tracker %d (%s %s) evaluated: return=%.2f%% accurate=%s",
            tracker_id, tracker.action, tracker.ticker, score.actual_return, score.accuracy,
        )
        return updated

    def evaluate_due(self, as_of: Optional[datetime] = None) -> list[Tracker]:
        """Evaluate every FOLLOWED/IGNORED tracker whose horizon has elapsed.

        The closing price is the latest market price observed after the
        recommendation was issued and no later than ``as_of``; trackers without
        one are skipped. A failure on one tracker is logged
        and does not stop the others.

        Returns:
            The trackers evaluated in this call.
        """
        as_of = as_of or utcnow()
        prices = MarketPriceRepository(self.conn)
        evaluated: list[Tracker] = []
        skipped_no_price = 0

        for tracker in self._trackers.awaiting_evaluation():
            if not horizon_elapsed(tracker.recommended_at, tracker.time_horizon, as_of):
                continue
            closing = prices.latest_between(tracker.ticker, tracker.recommended_at, as_of)
            if closing is None:
                skipped_no_price += 1
                continue
            try:
                evaluated.append(self.evaluate(tracker.tracker_id, closing.price, as_of))  # type: ignore[arg-type]
            except (InvalidState, NotFound, ValueError) as exc:
                logger.warning("Tracker %s not evaluated: %s", tracker.tracker_id, exc)

        logger.info(
            "evaluate_due: %d evaluated, %d skipped (no price).",
            len(evaluated), skipped_no_price,
        )
        return evaluated
