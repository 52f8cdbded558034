"""
Shared pytest fixtures for the Ensemble Tracker test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and migrations applied. Created anew for each test that requests it.
  - ``app_config``: Default ``AppConfig`` (no TOML, no env).
  - ``FakeInvoker``: Scripted async invoker for driving the aggregator.
  - Sample domain object factories for use in multiple test modules.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Generator, Optional

import pytest

from ensemble_tracker.config import AppConfig, EnsembleConfig, ModelEndpointConfig
from ensemble_tracker.db.migrations import initialize_database
from ensemble_tracker.models.recommendation import PositionContext, Tracker
from ensemble_tracker.models.verdict import AnalysisRequest, ModelVerdict
from ensemble_tracker.taxonomy.action_taxonomy import (
    Action,
    ConfidenceLabel,
    RiskLabel,
    TrackerStatus,
)

T0 = datetime(2024, 3, 1, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def restore_root_logger() -> Generator[None, None, None]:
    """``configure_logging`` replaces root handlers; undo it after each test."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


# ── Database fixture ──────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with schema + migrations applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    initialize_database(conn)
    yield conn
    conn.close()


# ── Config fixtures ───────────────────────────────────────────────────────────

def ensemble_config(*model_ids: str, timeout_seconds: float = 2.0) -> EnsembleConfig:
    """EnsembleConfig whose priority order is ``model_ids``."""
    return EnsembleConfig(
        timeout_seconds=timeout_seconds,
        models=[ModelEndpointConfig(model_id=m, endpoint=m) for m in model_ids],
    )


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig()


# ── Fake invokers ─────────────────────────────────────────────────────────────

class FakeInvoker:
    """Scripted ``ModelInvoker``: returns a fixed verdict, raises, or stalls."""

    def __init__(
        self,
        model_id: str,
        action: Action = Action.HOLD,
        confidence: float = 0.7,
        risk: Optional[RiskLabel] = None,
        target_price: Optional[float] = None,
        reasoning: str = "",
        delay: float = 0.0,
        error: Optional[Exception] = None,
        timeout_seconds: float = 1.0,
    ) -> None:
        self.model_id = model_id
        self.action = action
        self.confidence = confidence
        self.risk = risk
        self.target_price = target_price
        self.reasoning = reasoning or f"{model_id} says {action}."
        self.delay = delay
        self.error = error
        self.timeout_seconds = timeout_seconds
        self.calls: list[AnalysisRequest] = []

    async def invoke(self, request: AnalysisRequest) -> ModelVerdict:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ModelVerdict(
            model_id=self.model_id,
            action=self.action,
            confidence=self.confidence,
            reasoning=self.reasoning,
            risk=self.risk,
            target_price=self.target_price,
        )


# ── Sample domain object factories ────────────────────────────────────────────

def make_tracker(**overrides) -> Tracker:
    """A PENDING BUY tracker at 100.0; override any field."""
    fields = dict(
        tracker_id=1,
        rec_id=1,
        user_id="alice",
        portfolio_id=1,
        ticker="AAPL",
        action=Action.BUY,
        confidence_label=ConfidenceLabel.HIGH,
        time_horizon="30d",
        recommended_price=100.0,
        target_price=None,
        position_quantity=10.0,
        recommended_at=T0,
        status=TrackerStatus.PENDING,
    )
    fields.update(overrides)
    return Tracker(**fields)


def make_evaluated(
    accuracy: bool,
    followed: bool = True,
    actual_return: float = 5.0,
    action: Action = Action.BUY,
    **overrides,
) -> Tracker:
    """An EVALUATED tracker with the given outcome."""
    missed = actual_return if (not followed and accuracy and actual_return > 0) else None
    return make_tracker(
        action=action,
        status=TrackerStatus.EVALUATED,
        was_followed=followed,
        followed_at=T0,
        evaluated_at=T0,
        closing_price=100.0 * (1 + actual_return / 100),
        actual_return=actual_return,
        accuracy=accuracy,
        missed_return=missed,
        **overrides,
    )


@pytest.fixture
def sample_position() -> PositionContext:
    return PositionContext(quantity=10.0, purchase_price=90.0, current_price=100.0)
