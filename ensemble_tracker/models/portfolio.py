"""
Portfolio, holding, price and snapshot records.

These are thin storage models: the engine reads holdings to know what to
recommend on, market prices to score trackers, and snapshots as the baseline
for the portfolio health score's realised-return component.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Portfolio(BaseModel):
    """A user's portfolio.

    Attributes:
        portfolio_id: Auto-assigned DB PK; ``None`` before insertion.
        user_id: Owner.
        name: Display name.
        is_active: Inactive portfolios are kept for history only.
    """

    model_config = ConfigDict(frozen=True)

    portfolio_id: Optional[int] = None
    user_id: str
    name: str = "Main"
    is_active: bool = True

    @field_validator("user_id")
    @classmethod
    def validate_user(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("user_id must not be empty.")
        return v.strip()


class Holding(BaseModel):
    """One position (lot) in a portfolio."""

    model_config = ConfigDict(frozen=True)

    holding_id: Optional[int] = None
    portfolio_id: int
    ticker: str
    quantity: float
    purchase_price: Optional[float] = None

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("ticker must not be empty.")
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"quantity must be >= 0, got {v}.")
        return v

    @field_validator("purchase_price")
    @classmethod
    def validate_purchase_price(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError(f"purchase_price must be > 0, got {v}.")
        return v


class MarketPrice(BaseModel):
    """An observed price for a ticker."""

    model_config = ConfigDict(frozen=True)

    ticker: str
    price: float
    observed_at: datetime

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"price must be > 0, got {v}.")
        return v


class PortfolioSnapshot(BaseModel):
    """Point-in-time valuation of a portfolio.

    Attributes:
        total_value: Σ quantity × price at ``taken_at``.
        total_cost: Σ quantity × purchase price (price when unknown).
        return_pct: (value − cost) / cost × 100, 0 when cost is 0.
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: Optional[int] = None
    portfolio_id: int
    total_value: float
    total_cost: float
    return_pct: float
    taken_at: datetime
