"""
Recommendation and tracker records.

``Recommendation`` is what the user sees: one action per holding, created by
the factory and only ever mutated to flip ``is_active`` when superseded.

``Tracker`` is the longitudinal record of that recommendation's fate. It is
frozen like every other model here; each state transition produces a new,
re-validated instance which the repository persists with a status-guarded
UPDATE. History is append-only: a tracker is never deleted and
an EVALUATED tracker is never re-scored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ensemble_tracker.taxonomy.action_taxonomy import (
    Action,
    ConfidenceLabel,
    RiskLabel,
    TrackerStatus,
)


class PositionContext(BaseModel):
    """Position facts the factory needs for one holding.

    Attributes:
        quantity: Units held (0 if unknown).
        purchase_price: Cost per unit, if known.
        current_price: Price at recommendation time.
    """

    model_config = ConfigDict(frozen=True)

    quantity: float = 0.0
    purchase_price: Optional[float] = None
    current_price: float

    @field_validator("current_price")
    @classmethod
    def validate_price(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"current_price must be > 0, got {v}.")
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"quantity must be >= 0, got {v}.")
        return v


class Recommendation(BaseModel):
    """A BUY/SELL/HOLD call for one ticker in one portfolio.

    Attributes:
        rec_id: Auto-assigned DB PK; ``None`` before insertion.
        user_id: Owner.
        portfolio_id: Portfolio the holding belongs to.
        ticker: Equity symbol.
        action: Recommended action.
        confidence_label: Ensemble confidence bucket.
        current_price: Price at recommendation time.
        target_price: Optional price target.
        risk_label: Ensemble risk bucket.
        time_horizon: Horizon string, e.g. ``"90d"``.
        reasoning: Human-readable explanation.
        consensus_level: Fraction of models agreeing (0 for fallbacks).
        is_fallback: ``True`` if issued because the ensemble was unavailable.
        is_active: ``False`` once superseded by a newer recommendation.
        created_at: UTC creation time.
    """

    model_config = ConfigDict(frozen=True)

    rec_id: Optional[int] = None
    user_id: str
    portfolio_id: int
    ticker: str
    action: Action
    confidence_label: ConfidenceLabel
    current_price: float
    target_price: Optional[float] = None
    risk_label: RiskLabel
    time_horizon: str
    reasoning: str
    consensus_level: float = 0.0
    is_fallback: bool = False
    is_active: bool = True
    created_at: datetime

    @field_validator("reasoning")
    @classmethod
    def validate_reasoning_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("reasoning must not be empty.")
        return v.strip()


class Tracker(BaseModel):
    """Outcome record of a single recommendation.

    Field groups and when they become defined:
      - at creation: identity, ``recommended_price``, ``recommended_at``.
        ``rec_id`` is assigned once the recommendation is stored.
      - on ``record_action``: ``was_followed``, ``action_price``, ``followed_at``.
      - on ``evaluate``: ``evaluated_at``, ``closing_price``, ``actual_return``,
        ``accuracy``, ``target_reached``, and ``missed_return`` when the
        ignored call would have paid off.

    Returns are in percent.
    """

    model_config = ConfigDict(frozen=True)

    tracker_id: Optional[int] = None
    rec_id: Optional[int] = None
    user_id: str
    portfolio_id: int
    ticker: str
    action: Action
    confidence_label: ConfidenceLabel
    time_horizon: str
    recommended_price: float
    target_price: Optional[float] = None
    position_quantity: float = 0.0
    recommended_at: datetime
    status: TrackerStatus = TrackerStatus.PENDING
    was_followed: Optional[bool] = None
    action_price: Optional[float] = None
    followed_at: Optional[datetime] = None
    evaluated_at: Optional[datetime] = None
    closing_price: Optional[float] = None
    actual_return: Optional[float] = None
    missed_return: Optional[float] = None
    accuracy: Optional[bool] = None
    target_reached: Optional[bool] = None

    @field_validator("recommended_price")
    @classmethod
    def validate_recommended_price(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"recommended_price must be > 0, got {v}.")
        return v

    @model_validator(mode="after")
    def validate_lifecycle(self) -> "Tracker":
        if self.status == TrackerStatus.PENDING and self.was_followed is not None:
            raise ValueError("A PENDING tracker cannot have was_followed set.")
        if self.status != TrackerStatus.PENDING:
            if self.was_followed is None:
                raise ValueError(f"A {self.status} tracker must have was_followed set.")
        if self.evaluated_at is None and self.accuracy is not None:
            raise ValueError("accuracy is only defined once evaluated_at is set.")
        if self.status == TrackerStatus.EVALUATED and self.evaluated_at is None:
            raise ValueError("An EVALUATED tracker must have evaluated_at set.")
        if self.missed_return is not None and self.was_followed is not False:
            raise ValueError("missed_return is only defined for ignored recommendations.")
        return self

    @property
    def is_evaluated(self) -> bool:
        return self.status == TrackerStatus.EVALUATED
