"""
Error taxonomy for the ensemble and tracking core.

Propagation policy
------------------
EnsembleUnavailable
    Raised by the aggregator when no model produced a verdict. Batch
    generation recovers it into a fallback HOLD recommendation; it never
    aborts a portfolio run.
InvalidState
    Illegal tracker transition (e.g. evaluating twice). Always surfaced to
    the caller: it means the caller double-submitted.
NotFound
    Unknown tracker, recommendation, user or portfolio.
DataAccessFailure
    Wraps any ``sqlite3.Error`` raised by the storage layer. Propagates
    unchanged; no retries are attempted here.
ModelInvocationError
    A single model call failed. Internal to the aggregator, which drops
    the model from the vote.
"""

from __future__ import annotations

from typing import Any


class EnsembleTrackerError(RuntimeError):
    """Base class for all errors raised by this package."""


class EnsembleUnavailable(EnsembleTrackerError):
    """Every configured model failed or timed out for a ticker."""

    def __init__(self, ticker: str, attempted: int) -> None:
        self.ticker = ticker
        self.attempted = attempted
        super().__init__(
            f"No model verdicts received for {ticker} "
            f"({attempted} model(s) attempted)."
        )


class InvalidState(EnsembleTrackerError):
    """A tracker transition was attempted from a state that does not allow it."""

    def __init__(self, tracker_id: int, current: str, operation: str) -> None:
        self.tracker_id = tracker_id
        self.current = current
        self.operation = operation
        super().__init__(
            f"Tracker {tracker_id} is {current}; cannot {operation}."
        )


class NotFound(EnsembleTrackerError):
    """A referenced entity does not exist."""

    def __init__(self, kind: str, key: Any) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} not found.")


class DataAccessFailure(EnsembleTrackerError):
    """The storage layer failed; the original error is chained as ``__cause__``."""


class ModelInvocationError(EnsembleTrackerError):
    """A single model call failed or returned an unusable payload."""

    def __init__(self, model_id: str, reason: str) -> None:
        self.model_id = model_id
        self.reason = reason
        super().__init__(f"Model {model_id} failed: {reason}")
