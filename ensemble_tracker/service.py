"""
Service facade: the operations exposed to callers (CLI, scheduler, API layer).

Every operation opens its own connection via ``get_connection`` so the
service instance can be shared between threads. The only state it keeps
across calls is the per-tracker lock registry.

Batch generation runs one aggregate-then-persist sequence per ticker. A
ticker whose models all fail gets a fallback HOLD; nothing a single ticker
does can abort the batch. Storage errors (``DataAccessFailure``) are not
recovered here.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator, Optional

import httpx

from ensemble_tracker.analytics.health import PortfolioHealthAnalyzer
from ensemble_tracker.analytics.peer import PeerComparator
from ensemble_tracker.analytics.performance import PerformanceAnalyzer
from ensemble_tracker.config import AppConfig
from ensemble_tracker.db.connection import get_connection
from ensemble_tracker.db.migrations import initialize_database
from ensemble_tracker.db.repositories.portfolio_repo import (
    MarketPriceRepository,
    PortfolioRepository,
)
from ensemble_tracker.db.repositories.recommendation_repo import RecommendationRepository
from ensemble_tracker.db.repositories.tracker_repo import TrackerRepository
from ensemble_tracker.ensemble.aggregator import EnsembleAggregator
from ensemble_tracker.ensemble.invoker import build_invokers
from ensemble_tracker.ensemble.observer import LoggingObserver, ModelResponseLogObserver
from ensemble_tracker.exceptions import EnsembleUnavailable, NotFound
from ensemble_tracker.models.performance import (
    PeerComparison,
    PerformanceSnapshot,
    PortfolioHealth,
)
from ensemble_tracker.models.portfolio import Holding, MarketPrice, Portfolio, PortfolioSnapshot
from ensemble_tracker.models.recommendation import PositionContext, Recommendation, Tracker
from ensemble_tracker.tracking.factory import RecommendationFactory
from ensemble_tracker.tracking.outcome import OutcomeRecorder, TrackerLocks
from ensemble_tracker.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def _positions(holdings: list[Holding]) -> dict[str, tuple[float, Optional[float]]]:
    """Collapse lots into ``ticker → (quantity, average purchase price)``."""
    lots: dict[str, list[Holding]] = {}
    for h in holdings:
        lots.setdefault(h.ticker, []).append(h)

    positions: dict[str, tuple[float, Optional[float]]] = {}
    for ticker, group in lots.items():
        quantity = sum(h.quantity for h in group)
        priced = [h for h in group if h.purchase_price is not None]
        priced_qty = sum(h.quantity for h in priced)
        if priced_qty > 0:
            avg = sum(h.quantity * h.purchase_price for h in priced) / priced_qty  # type: ignore[operator]
        elif priced:
            avg = priced[0].purchase_price
        else:
            avg = None
        positions[ticker] = (quantity, avg)
    return positions


class EnsembleTrackerService:
    """Entry point for generating, tracking and analysing recommendations.

    Args:
        config: Full application config.
        aggregator: Ensemble used for generation.
        db_path: Overrides ``config.database.db_path`` (tests use a tmp file).
    """

    def __init__(
        self,
        config: AppConfig,
        aggregator: EnsembleAggregator,
        db_path: Optional[str] = None,
    ) -> None:
        self.config = config
        self.aggregator = aggregator
        self.db_path = db_path or config.database.db_path
        self.factory = RecommendationFactory(config.tracking)
        self._locks = TrackerLocks()
        with self._connect() as conn:
            applied = initialize_database(conn)
        if applied:
            logger.info("Applied %d migration(s) to %s", applied, self.db_path)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        db_path: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "EnsembleTrackerService":
        """Build a service backed by the configured HTTP models."""
        path = db_path or config.database.db_path
        observers = [
            LoggingObserver(),
            ModelResponseLogObserver(
                path, config.database.wal_mode, config.database.busy_timeout_ms
            ),
        ]
        aggregator = EnsembleAggregator(
            build_invokers(config.ensemble, transport=transport),
            config.ensemble,
            observers=observers,
        )
        return cls(config, aggregator, db_path=path)

    def close(self) -> None:
        """Flush pending observer notifications (audit log) and release them."""
        self.aggregator.close()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        with get_connection(
            self.db_path,
            wal_mode=self.config.database.wal_mode,
            busy_timeout_ms=self.config.database.busy_timeout_ms,
        ) as conn:
            yield conn

    # ── Portfolio data ────────────────────────────────────────────────────────

    def create_portfolio(self, user_id: str, name: str = "Main") -> Portfolio:
        portfolio = Portfolio(user_id=user_id, name=name)
        with self._connect() as conn:
            portfolio_id = PortfolioRepository(conn).insert(portfolio)
        return portfolio.model_copy(update={"portfolio_id": portfolio_id})

    def add_holding(
        self,
        portfolio_id: int,
        ticker: str,
        quantity: float,
        purchase_price: Optional[float] = None,
    ) -> Holding:
        holding = Holding(
            portfolio_id=portfolio_id,
            ticker=ticker,
            quantity=quantity,
            purchase_price=purchase_price,
        )
        with self._connect() as conn:
            repo = PortfolioRepository(conn)
            if repo.get_by_id(portfolio_id) is None:
                raise NotFound("Portfolio", portfolio_id)
            holding_id = repo.add_holding(holding)
        return holding.model_copy(update={"holding_id": holding_id})

    def record_price(
        self,
        ticker: str,
        price: float,
        observed_at: Optional[datetime] = None,
    ) -> MarketPrice:
        market_price = MarketPrice(ticker=ticker, price=price, observed_at=observed_at or utcnow())
        with self._connect() as conn:
            MarketPriceRepository(conn).insert(market_price)
        return market_price

    # ── Generation ────────────────────────────────────────────────────────────

    def generate_for_portfolio(
        self,
        user_id: str,
        portfolio_id: int,
        time_horizon: Optional[str] = None,
        risk_tolerance: Optional[str] = None,
    ) -> list[Recommendation]:
        """Synchronous wrapper around ``generate_for_portfolio_async``.

        Raises:
            RuntimeError: Called from a running event loop; await
                ``generate_for_portfolio_async`` there instead.
            NotFound: Unknown portfolio, or one not owned by ``user_id``.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError(
                "generate_for_portfolio() cannot run inside an event loop; "
                "await generate_for_portfolio_async() instead."
            )
        return asyncio.run(
            self.generate_for_portfolio_async(user_id, portfolio_id, time_horizon, risk_tolerance)
        )

    async def generate_for_portfolio_async(
        self,
        user_id: str,
        portfolio_id: int,
        time_horizon: Optional[str] = None,
        risk_tolerance: Optional[str] = None,
    ) -> list[Recommendation]:
        """Issue one recommendation per ticker held in the portfolio.

        Raises:
            NotFound: Unknown portfolio, or one not owned by ``user_id``.
        """
        horizon = time_horizon or self.config.tracking.default_time_horizon
        risk = risk_tolerance or self.config.tracking.default_risk_tolerance

        with self._connect() as conn:
            portfolios = PortfolioRepository(conn)
            portfolio = portfolios.get_by_id(portfolio_id)
            if portfolio is None or portfolio.user_id != user_id:
                raise NotFound("Portfolio", portfolio_id)
            positions = _positions(portfolios.get_holdings(portfolio_id))
            prices = MarketPriceRepository(conn)
            latest = {ticker: prices.latest_price(ticker) for ticker in positions}

        recommendations: list[Recommendation] = []
        for ticker, (quantity, purchase_price) in positions.items():
            current_price = latest[ticker] or purchase_price
            if current_price is None:
                logger.warning("%s | no market or purchase price; skipped.", ticker)
                continue
            position = PositionContext(
                quantity=quantity,
                purchase_price=purchase_price,
                current_price=current_price,
            )
            rec, tracker = await self._recommend(user_id, portfolio_id, ticker, position, horizon, risk)
            recommendations.append(self._store(rec, tracker))

        fallbacks = sum(1 for r in recommendations if r.is_fallback)
        logger.info(
            "Portfolio %d: %d recommendation(s) generated (%d fallback).",
            portfolio_id, len(recommendations), fallbacks,
        )
        return recommendations

    async def _recommend(
        self,
        user_id: str,
        portfolio_id: int,
        ticker: str,
        position: PositionContext,
        horizon: str,
        risk_tolerance: str,
    ) -> tuple[Recommendation, Tracker]:
        context: dict[str, Any] = {
            "quantity": position.quantity,
            "purchase_price": position.purchase_price,
            "current_price": position.current_price,
        }
        try:
            result = await self.aggregator.aggregate_async(ticker, risk_tolerance, horizon, context)
        except EnsembleUnavailable as exc:
            logger.warning("%s | %s Issuing fallback HOLD.", ticker, exc)
        except Exception as exc:
            logger.error("%s | ensemble failed unexpectedly: %s. Issuing fallback HOLD.", ticker, exc)
        else:
            return self.factory.create(user_id, portfolio_id, ticker, position, result, horizon)
        return self.factory.create_fallback(user_id, portfolio_id, ticker, position, horizon)

    def _store(self, rec: Recommendation, tracker: Tracker) -> Recommendation:
        with self._connect() as conn:
            recs = RecommendationRepository(conn)
            superseded = recs.deactivate_active(rec.user_id, rec.portfolio_id, rec.ticker)
            rec_id = recs.insert(rec)
            TrackerRepository(conn).insert(tracker.model_copy(update={"rec_id": rec_id}))
        if superseded:
            logger.debug("%s | superseded %d active recommendation(s).", rec.ticker, superseded)
        return rec.model_copy(update={"rec_id": rec_id})

    # ── Tracking ──────────────────────────────────────────────────────────────

    def record_action(
        self,
        tracker_id: int,
        followed: bool,
        action_price: Optional[float] = None,
    ) -> Tracker:
        with self._connect() as conn:
            recorder = OutcomeRecorder(conn, self.config.tracking, self._locks)
            return recorder.record_action(tracker_id, followed, action_price)

    def evaluate(
        self,
        tracker_id: int,
        closing_price: float,
        as_of: Optional[datetime] = None,
    ) -> Tracker:
        with self._connect() as conn:
            recorder = OutcomeRecorder(conn, self.config.tracking, self._locks)
            return recorder.evaluate(tracker_id, closing_price, as_of)

    def evaluate_due(self, as_of: Optional[datetime] = None) -> list[Tracker]:
        with self._connect() as conn:
            recorder = OutcomeRecorder(conn, self.config.tracking, self._locks)
            return recorder.evaluate_due(as_of)

    def get_tracker_for_recommendation(self, rec_id: int) -> Tracker:
        with self._connect() as conn:
            tracker = TrackerRepository(conn).get_by_rec_id(rec_id)
        if tracker is None:
            raise NotFound("Recommendation", rec_id)
        return tracker

    # ── Analytics ─────────────────────────────────────────────────────────────

    def get_performance(self, user_id: str) -> PerformanceSnapshot:
        with self._connect() as conn:
            return PerformanceAnalyzer(conn).summarize(user_id)

    def get_recent_trackers(self, user_id: str, limit: Optional[int] = None) -> list[Tracker]:
        with self._connect() as conn:
            return PerformanceAnalyzer(conn).recent_trackers(
                user_id, limit or self.config.tracking.recent_limit
            )

    def get_peer_comparison(self, user_id: str) -> PeerComparison:
        with self._connect() as conn:
            return PeerComparator(conn, self.config.peers).compare(user_id)

    def get_portfolio_health(self, portfolio_id: int) -> PortfolioHealth:
        with self._connect() as conn:
            return PortfolioHealthAnalyzer(conn, self.config.health).health(portfolio_id)

    def snapshot_portfolio(self, portfolio_id: int) -> PortfolioSnapshot:
        with self._connect() as conn:
            return PortfolioHealthAnalyzer(conn, self.config.health).snapshot(portfolio_id)
