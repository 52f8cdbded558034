"""
Closed vocabularies for recommendations and their tracked outcomes.

Four small enums describe everything that crosses a component boundary:
  - ``Action``          — the *what*: BUY / SELL / HOLD.
  - ``ConfidenceLabel`` — how sure the ensemble is.
  - ``RiskLabel``       — how risky acting on the call is.
  - ``TrackerStatus``   — where a recommendation is in its lifecycle.

Free-text model output is mapped onto these at the ingestion boundary
(``ensemble_tracker.ensemble.invoker``); nothing downstream of the aggregator
ever sees a raw string.

This module has NO imports from any other ``ensemble_tracker`` package.
"""

from enum import StrEnum


class Action(StrEnum):
    """Trading action recommended for a single equity."""

    BUY = "BUY"
    """Open or add to a position; expects a non-negative return."""

    SELL = "SELL"
    """Reduce or exit a position; expects a falling or flat price."""

    HOLD = "HOLD"
    """Keep the current position; expects a stable-to-rising price."""


class ConfidenceLabel(StrEnum):
    """Bucketed ensemble confidence."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskLabel(StrEnum):
    """Bucketed risk of acting on a recommendation."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TrackerStatus(StrEnum):
    """Lifecycle of a recommendation tracker.

    ``PENDING → FOLLOWED | IGNORED → EVALUATED``. EVALUATED is terminal.
    """

    PENDING = "PENDING"
    """Created alongside the recommendation; user has not responded."""

    FOLLOWED = "FOLLOWED"
    """User reported acting on the recommendation."""

    IGNORED = "IGNORED"
    """User reported not acting on the recommendation."""

    EVALUATED = "EVALUATED"
    """A closing price has been scored against the recommendation."""


# Legal transitions of the tracker state machine.
TRACKER_TRANSITIONS: dict[TrackerStatus, frozenset[TrackerStatus]] = {
    TrackerStatus.PENDING:   frozenset({TrackerStatus.FOLLOWED, TrackerStatus.IGNORED}),
    TrackerStatus.FOLLOWED:  frozenset({TrackerStatus.EVALUATED}),
    TrackerStatus.IGNORED:   frozenset({TrackerStatus.EVALUATED}),
    TrackerStatus.EVALUATED: frozenset(),
}

# Final fallback ordering for consensus ties (most conservative first).
ACTION_TIE_ORDER: tuple[Action, ...] = (Action.HOLD, Action.SELL, Action.BUY)


def can_transition(current: TrackerStatus, target: TrackerStatus) -> bool:
    """Return ``True`` if ``current → target`` is a legal tracker transition."""
    return target in TRACKER_TRANSITIONS[current]
