"""
Ensemble aggregator: concurrent fan-out plus consensus voting.

Fan-out
-------
Every invoker is started at once. Each call is bounded by its own
``timeout_seconds`` (``asyncio.wait_for``); the whole join is bounded by
``EnsembleConfig.timeout_seconds`` (``asyncio.wait``). Calls still running
when the overall bound expires are cancelled and dropped. A model that fails
or times out simply does not vote; nothing is retried.

Consensus
---------
``build_consensus()`` is a pure reducer over the verdicts that arrived:

  1. Majority action by count.
  2. Ties → larger summed confidence.
  3. Ties → the action backed by the highest-priority model
     (``EnsembleConfig.models`` order).
  4. Anything still tied → HOLD, then SELL, then BUY.

Verdicts are ordered by model priority before voting, never by arrival, so
identical verdict sets always yield identical results.

Observers
---------
Observers are notified off the request path: once a result is built it is
handed to a single-worker executor, which reports each verdict (in priority
order) and then the result to every observer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional, Sequence

from ensemble_tracker.config import EnsembleConfig
from ensemble_tracker.ensemble.invoker import ModelInvoker
from ensemble_tracker.ensemble.observer import VerdictObserver
from ensemble_tracker.exceptions import EnsembleUnavailable
from ensemble_tracker.models.verdict import AnalysisRequest, EnsembleResult, ModelVerdict
from ensemble_tracker.taxonomy.action_taxonomy import (
    ACTION_TIE_ORDER,
    Action,
    ConfidenceLabel,
    RiskLabel,
)

logger = logging.getLogger(__name__)


# ── Pure consensus helpers ─────────────────────────────────────────────────────

def confidence_label(
    mean_confidence: float,
    high_threshold: float = 0.8,
    medium_threshold: float = 0.6,
) -> ConfidenceLabel:
    """Bucket a mean confidence into HIGH / MEDIUM / LOW."""
    if mean_confidence >= high_threshold:
        return ConfidenceLabel.HIGH
    if mean_confidence >= medium_threshold:
        return ConfidenceLabel.MEDIUM
    return ConfidenceLabel.LOW


def risk_label(verdicts: Sequence[ModelVerdict]) -> RiskLabel:
    """Any HIGH → HIGH; every reported risk LOW → LOW; otherwise MEDIUM."""
    reported = [v.risk for v in verdicts if v.risk is not None]
    if RiskLabel.HIGH in reported:
        return RiskLabel.HIGH
    if reported and all(r == RiskLabel.LOW for r in reported):
        return RiskLabel.LOW
    return RiskLabel.MEDIUM


def order_by_priority(
    verdicts: Sequence[ModelVerdict],
    priority: Sequence[str],
) -> list[ModelVerdict]:
    """Sort verdicts by model priority; unknown models go last, by id."""
    rank = {model_id: i for i, model_id in enumerate(priority)}
    return sorted(verdicts, key=lambda v: (rank.get(v.model_id, len(rank)), v.model_id))


def select_action(ordered: Sequence[ModelVerdict]) -> Action:
    """Pick the winning action from priority-ordered verdicts."""
    counts: Counter[Action] = Counter()
    mass: dict[Action, float] = {}
    first_seen: dict[Action, int] = {}
    for position, verdict in enumerate(ordered):
        counts[verdict.action] += 1
        mass[verdict.action] = mass.get(verdict.action, 0.0) + verdict.confidence
        first_seen.setdefault(verdict.action, position)

    def sort_key(action: Action) -> tuple[Any, ...]:
        return (
            -counts[action],
            -round(mass[action], 9),
            first_seen[action],
            ACTION_TIE_ORDER.index(action),
        )

    return min(counts, key=sort_key)


def build_reasoning(
    final_action: Action,
    agreeing: Sequence[ModelVerdict],
    dissenting: Sequence[ModelVerdict],
) -> str:
    """Supporting rationales first, then dissenting perspectives."""
    total = len(agreeing) + len(dissenting)
    parts = [f"{len(agreeing)} of {total} model(s) recommend {final_action}."]
    supporting = [f"{v.model_id}: {v.reasoning}" for v in agreeing if v.reasoning]
    if supporting:
        parts.append("Supporting: " + " | ".join(supporting))
    dissent = [
        f"{v.model_id} ({v.action}): {v.reasoning}" if v.reasoning else f"{v.model_id} ({v.action})"
        for v in dissenting
    ]
    if dissent:
        parts.append("Dissenting: " + " | ".join(dissent))
    return " ".join(parts)


def build_consensus(
    ticker: str,
    verdicts: Sequence[ModelVerdict],
    priority: Sequence[str],
    high_threshold: float = 0.8,
    medium_threshold: float = 0.6,
    processing_time_ms: float = 0.0,
) -> EnsembleResult:
    """Reduce received verdicts to an ``EnsembleResult``.

    Raises:
        EnsembleUnavailable: If ``verdicts`` is empty.
    """
    if not verdicts:
        raise EnsembleUnavailable(ticker, 0)

    ordered = order_by_priority(verdicts, priority)
    final_action = select_action(ordered)
    agreeing = [v for v in ordered if v.action == final_action]
    dissenting = [v for v in ordered if v.action != final_action]

    mean_confidence = sum(v.confidence for v in agreeing) / len(agreeing)
    targets = [v.target_price for v in agreeing if v.target_price is not None]

    return EnsembleResult(
        ticker=ticker,
        final_action=final_action,
        confidence_label=confidence_label(mean_confidence, high_threshold, medium_threshold),
        risk_label=risk_label(agreeing),
        consensus_level=len(agreeing) / len(ordered),
        mean_confidence=mean_confidence,
        responses=tuple(ordered),
        reasoning=build_reasoning(final_action, agreeing, dissenting),
        target_price=(sum(targets) / len(targets)) if targets else None,
        processing_time_ms=processing_time_ms,
    )


# ── Aggregator ────────────────────────────────────────────────────────────────

class EnsembleAggregator:
    """Runs every invoker concurrently and votes on the answers.

    Args:
        invokers: Participating models. May be empty (every call then raises
            ``EnsembleUnavailable``).
        config: Timeouts, confidence thresholds and model priority.
        observers: Optional side-channel observers. They are notified from a
            single background worker after each result is built, so a slow or
            failing observer never delays or changes a result.
    """

    def __init__(
        self,
        invokers: Sequence[ModelInvoker],
        config: EnsembleConfig,
        observers: Sequence[VerdictObserver] = (),
    ) -> None:
        self._invokers = list(invokers)
        self._config = config
        self._observers = list(observers)
        self._observer_pool: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="ensemble-observers")
            if self._observers else None
        )
        configured = config.priority
        extra = [i.model_id for i in self._invokers if i.model_id not in configured]
        self._priority = configured + extra

    @property
    def model_ids(self) -> list[str]:
        return [i.model_id for i in self._invokers]

    def aggregate(
        self,
        ticker: str,
        risk_tolerance: str = "moderate",
        time_horizon: str = "90d",
        context: Optional[dict[str, Any]] = None,
    ) -> EnsembleResult:
        """Synchronous wrapper around ``aggregate_async``."""
        return asyncio.run(
            self.aggregate_async(ticker, risk_tolerance, time_horizon, context)
        )

    async def aggregate_async(
        self,
        ticker: str,
        risk_tolerance: str = "moderate",
        time_horizon: str = "90d",
        context: Optional[dict[str, Any]] = None,
    ) -> EnsembleResult:
        """Fan out to every invoker and return the consensus.

        Raises:
            EnsembleUnavailable: If no model produced a verdict in time.
        """
        request = AnalysisRequest(
            ticker=ticker,
            risk_tolerance=risk_tolerance,
            time_horizon=time_horizon,
            context=context or {},
        )
        if not self._invokers:
            raise EnsembleUnavailable(request.ticker, 0)

        start = time.perf_counter()
        tasks = {
            asyncio.create_task(self._invoke_one(inv, request)): inv
            for inv in self._invokers
        }
        done, pending = await asyncio.wait(tasks, timeout=self._config.timeout_seconds)

        for task in pending:
            logger.warning(
                "%s | model %s exceeded overall timeout (%.1fs); dropped.",
                request.ticker, tasks[task].model_id, self._config.timeout_seconds,
            )
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        verdicts: list[ModelVerdict] = []
        for task, invoker in tasks.items():
            if task not in done:
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning(
                    "%s | model %s failed: %s",
                    request.ticker, invoker.model_id, exc or type(exc).__name__,
                )
                continue
            verdicts.append(task.result())

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if not verdicts:
            raise EnsembleUnavailable(request.ticker, len(self._invokers))

        result = build_consensus(
            request.ticker,
            verdicts,
            self._priority,
            high_threshold=self._config.high_confidence,
            medium_threshold=self._config.medium_confidence,
            processing_time_ms=elapsed_ms,
        )
        if self._observer_pool is not None:
            self._observer_pool.submit(self._notify, result)
        return result

    async def _invoke_one(self, invoker: ModelInvoker, request: AnalysisRequest) -> ModelVerdict:
        timeout = getattr(invoker, "timeout_seconds", None) or self._config.timeout_seconds
        start = time.perf_counter()
        verdict = await asyncio.wait_for(invoker.invoke(request), timeout=timeout)
        latency_ms = (time.perf_counter() - start) * 1000.0
        return verdict.model_copy(
            update={"model_id": invoker.model_id, "latency_ms": latency_ms}
        )

    def flush(self) -> None:
        """Block until every queued observer notification has run."""
        if self._observer_pool is not None:
            self._observer_pool.submit(lambda: None).result()

    def close(self) -> None:
        """Run outstanding observer notifications and stop the worker.

        Later results are no longer reported to observers.
        """
        if self._observer_pool is not None:
            self._observer_pool.shutdown(wait=True)
            self._observer_pool = None

    def _notify(self, result: EnsembleResult) -> None:
        for observer in self._observers:
            for verdict in result.responses:
                try:
                    observer.on_verdict(result.ticker, verdict)
                except Exception as exc:
                    logger.warning("Observer %r failed on verdict: %s", observer, exc)
            try:
                observer.on_result(result)
            except Exception as exc:
                logger.warning("Observer %r failed on result: %s", observer, exc)
