"""
Model verdicts and the ensemble result they fold into.

``AnalysisRequest`` is what every model invoker receives for one ticker.

``ModelVerdict`` is one model's answer: action, confidence, rationale and a
structured risk label. Free text never reaches this model; invokers parse it
at the boundary.

``EnsembleResult`` is the aggregator's reduction of all verdicts that arrived
within the timeout. Both verdicts and results are frozen.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ensemble_tracker.taxonomy.action_taxonomy import Action, ConfidenceLabel, RiskLabel


class AnalysisRequest(BaseModel):
    """Input handed to each model invoker.

    Attributes:
        ticker: Equity symbol, upper-cased.
        risk_tolerance: User risk appetite, e.g. ``"moderate"``.
        time_horizon: Horizon string, e.g. ``"90d"``.
        context: Position/portfolio context passed through to the prompt.
    """

    model_config = ConfigDict(frozen=True)

    ticker: str
    risk_tolerance: str = "moderate"
    time_horizon: str = "90d"
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("ticker must not be empty.")
        return v


class ModelVerdict(BaseModel):
    """One model's recommendation for one ticker.

    Attributes:
        model_id: Identifier of the producing model.
        action: BUY / SELL / HOLD.
        confidence: Self-reported confidence in [0, 1].
        reasoning: Short free-text rationale (display only).
        latency_ms: Wall-clock duration of the call.
        risk: Structured risk label, or ``None`` if the model gave none.
        target_price: Optional price target.
    """

    model_config = ConfigDict(frozen=True)

    model_id: str
    action: Action
    confidence: float
    reasoning: str = ""
    latency_ms: float = 0.0
    risk: Optional[RiskLabel] = None
    target_price: Optional[float] = None

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {v}.")
        return v

    @field_validator("latency_ms")
    @classmethod
    def validate_latency(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"latency_ms must be >= 0, got {v}.")
        return v

    @field_validator("target_price")
    @classmethod
    def validate_target(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError(f"target_price must be > 0, got {v}.")
        return v


class EnsembleResult(BaseModel):
    """Consensus over all verdicts received for one ticker.

    Attributes:
        ticker: Equity symbol.
        final_action: Winning action after tie-breaks.
        confidence_label: Bucketed mean confidence of agreeing verdicts.
        risk_label: Risk derived from agreeing verdicts.
        consensus_level: Fraction of received verdicts that agree.
        mean_confidence: Unbucketed mean confidence of agreeing verdicts.
        responses: Verdicts ordered by model priority.
        reasoning: Supporting then dissenting rationales.
        target_price: Mean target of agreeing verdicts, if any gave one.
        processing_time_ms: Wall-clock time of the whole fan-out.
    """

    model_config = ConfigDict(frozen=True)

    ticker: str
    final_action: Action
    confidence_label: ConfidenceLabel
    risk_label: RiskLabel
    consensus_level: float
    mean_confidence: float
    responses: tuple[ModelVerdict, ...]
    reasoning: str
    target_price: Optional[float] = None
    processing_time_ms: float = 0.0

    @model_validator(mode="after")
    def validate_consistency(self) -> "EnsembleResult":
        if not self.responses:
            raise ValueError("EnsembleResult requires at least one response.")
        if not 0.0 < self.consensus_level <= 1.0:
            raise ValueError(
                f"consensus_level must be in (0.0, 1.0], got {self.consensus_level}."
            )
        return self

    @property
    def agreeing(self) -> tuple[ModelVerdict, ...]:
        return tuple(v for v in self.responses if v.action == self.final_action)
