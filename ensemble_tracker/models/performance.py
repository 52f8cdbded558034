"""
Derived performance outputs.

None of these are a source of truth: each is recomputed on demand from the
tracker table. Rates and returns are percentages.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PerformanceSnapshot(BaseModel):
    """Aggregate accuracy, return and missed-opportunity statistics for a user.

    Attributes:
        user_id: Whose trackers were summarised.
        total_recommendations: Number of trackers.
        followed_count: Trackers the user reported acting on.
        ignored_count: Trackers the user reported not acting on.
        correct_predictions: EVALUATED trackers with ``accuracy=True``.
        incorrect_predictions: EVALUATED trackers with ``accuracy=False``.
        pending_predictions: Trackers not yet EVALUATED.
        accuracy_rate: correct / (correct + incorrect) × 100.
        buy_accuracy, sell_accuracy, hold_accuracy: Same, per action.
        follow_rate: followed / total × 100.
        average_return, total_return: Over followed, evaluated trackers.
        best_return, worst_return: ``None`` when no followed tracker is evaluated.
        missed_opportunity_count: Ignored trackers with a ``missed_return``.
        missed_opportunity_pct: Σ missed_return.
        missed_opportunity_value: Σ missed_return applied to position size.
    """

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    total_recommendations: int = 0
    followed_count: int = 0
    ignored_count: int = 0
    correct_predictions: int = 0
    incorrect_predictions: int = 0
    pending_predictions: int = 0
    accuracy_rate: float = 0.0
    buy_accuracy: float = 0.0
    sell_accuracy: float = 0.0
    hold_accuracy: float = 0.0
    follow_rate: float = 0.0
    average_return: float = 0.0
    total_return: float = 0.0
    best_return: Optional[float] = None
    worst_return: Optional[float] = None
    missed_opportunity_count: int = 0
    missed_opportunity_pct: float = 0.0
    missed_opportunity_value: float = 0.0

    @property
    def evaluated_count(self) -> int:
        return self.correct_predictions + self.incorrect_predictions


class PeerComparison(BaseModel):
    """A user's standing within the cohort of evaluated users.

    ``percentile`` is ``None`` when the user has no EVALUATED tracker and is
    therefore outside the cohort.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    percentile: Optional[float] = None
    rank: Optional[int] = None
    cohort_size: int = 0
    cohort_average_accuracy: float = 0.0
    cohort_average_return: float = 0.0
    top_performer_return: float = 0.0
    user_accuracy: float = 0.0
    user_average_return: float = 0.0


class PortfolioHealth(BaseModel):
    """Composite 0–100 health score with its component inputs."""

    model_config = ConfigDict(frozen=True)

    portfolio_id: int
    score: float
    return_pct: float
    return_score: float
    follow_rate: float
    diversification: float
    position_count: int
    advice: list[str] = Field(default_factory=list)
