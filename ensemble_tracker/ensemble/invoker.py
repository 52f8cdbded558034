"""
Model invokers: the boundary between free-text model output and typed verdicts.

Anything satisfying the ``ModelInvoker`` protocol can take part in the
ensemble. The bundled ``OllamaInvoker`` talks to a locally hosted model
server over HTTP:

    POST {base_url}/api/generate
    {"model": "<endpoint>", "prompt": "<prompt>", "stream": false}
    → {"response": "<free text>", ...}

The free text is mapped onto ``Action`` / ``RiskLabel`` / a confidence in
[0, 1] by ``parse_model_text()``. Nothing downstream of this module ever sees
the raw string except as display-only reasoning.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import httpx

from ensemble_tracker.config import EnsembleConfig
from ensemble_tracker.exceptions import ModelInvocationError
from ensemble_tracker.models.verdict import AnalysisRequest, ModelVerdict
from ensemble_tracker.taxonomy.action_taxonomy import Action, RiskLabel

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.7
MAX_REASONING_SENTENCES = 3

_CONFIDENCE_RE = re.compile(r"confidence[:\s]+(\d+(?:\.\d+)?)\s*(%)?", re.IGNORECASE)
_RISK_RE = re.compile(r"risk(?:\s+level)?[:\s]+(low|medium|high)", re.IGNORECASE)
_TARGET_RE = re.compile(r"target(?:\s+price)?[:\s]+\$?(\d+(?:\.\d+)?)", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


@runtime_checkable
class ModelInvoker(Protocol):
    """A single prediction model taking part in the ensemble.

    ``invoke`` must raise on failure; it is never expected to return a
    partial verdict. ``timeout_seconds`` bounds one call.
    """

    model_id: str
    timeout_seconds: float

    async def invoke(self, request: AnalysisRequest) -> ModelVerdict: ...


# ── Free-text parsing ─────────────────────────────────────────────────────────

def parse_action(text: str) -> Action:
    """Map model text onto an action. ``STRONG BUY``/``STRONG SELL`` collapse; default HOLD."""
    upper = text.upper()
    if "STRONG BUY" in upper:
        return Action.BUY
    if "STRONG SELL" in upper:
        return Action.SELL
    # First explicit action word wins: "BUY, not SELL" is a BUY.
    match = re.search(r"\b(BUY|SELL|HOLD)\b", upper)
    if match:
        return Action(match.group(1))
    return Action.HOLD


def parse_confidence(text: str) -> float:
    """Extract ``confidence: NN%`` as a fraction; ``DEFAULT_CONFIDENCE`` if absent.

    A value with a percent sign is always a percentage. Without one, values
    up to 1 are fractions and larger values are percentages.
    """
    match = _CONFIDENCE_RE.search(text)
    if not match:
        return DEFAULT_CONFIDENCE
    value = float(match.group(1))
    if match.group(2) or value > 1.0:
        value /= 100.0
    return max(0.0, min(1.0, value))


def parse_risk(text: str) -> Optional[RiskLabel]:
    match = _RISK_RE.search(text)
    return RiskLabel(match.group(1).upper()) if match else None


def parse_target_price(text: str) -> Optional[float]:
    match = _TARGET_RE.search(text)
    if not match:
        return None
    value = float(match.group(1))
    return value if value > 0 else None


def parse_reasoning(text: str) -> str:
    """First ``MAX_REASONING_SENTENCES`` sentences of the model output."""
    sentences = [s.strip() for s in _SENTENCE_SPLIT_RE.split(text.strip()) if s.strip()]
    return " ".join(sentences[:MAX_REASONING_SENTENCES])


def parse_model_text(model_id: str, text: str, latency_ms: float = 0.0) -> ModelVerdict:
    """Convert one model's free-text answer into a ``ModelVerdict``."""
    return ModelVerdict(
        model_id=model_id,
        action=parse_action(text),
        confidence=parse_confidence(text),
        reasoning=parse_reasoning(text),
        latency_ms=latency_ms,
        risk=parse_risk(text),
        target_price=parse_target_price(text),
    )


def build_prompt(request: AnalysisRequest) -> str:
    """Render the analysis prompt sent to every HTTP-backed model."""
    lines = [
        f"Analyze the stock {request.ticker} for an investor with "
        f"{request.risk_tolerance} risk tolerance and a {request.time_horizon} horizon.",
    ]
    for key, value in sorted(request.context.items()):
        lines.append(f"{key}: {value}")
    lines.append(
        "Respond with a recommendation of BUY, SELL or HOLD, a line "
        "'Confidence: NN%', a line 'Risk: low|medium|high', an optional "
        "'Target price: $NN' and a short explanation."
    )
    return "\n".join(lines)


# ── HTTP invoker ──────────────────────────────────────────────────────────────

class OllamaInvoker:
    """Invoker for a model hosted behind an Ollama-compatible HTTP API.

    Args:
        model_id: Identifier reported on the verdict.
        endpoint: Model name as the server knows it (e.g. ``"llama3:8b"``).
        base_url: Server root URL.
        timeout_seconds: Per-call HTTP timeout.
        transport: Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        model_id: str,
        endpoint: str,
        base_url: str,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model_id = model_id
        self.endpoint = endpoint
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def invoke(self, request: AnalysisRequest) -> ModelVerdict:
        """POST the prompt and parse the reply.

        Raises:
            ModelInvocationError: On transport errors, non-2xx status or a
                payload without a ``response`` string.
        """
        payload = {"model": self.endpoint, "prompt": build_prompt(request), "stream": False}
        try:
            async with self._client() as client:
                resp = await client.post("/api/generate", json=payload)
                resp.raise_for_status()
                body: Any = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ModelInvocationError(self.model_id, str(exc)) from exc

        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise ModelInvocationError(self.model_id, "empty or missing 'response' field")
        return parse_model_text(self.model_id, text)

    async def ping(self) -> bool:
        """Return ``True`` if the server answers ``GET /api/tags``."""
        try:
            async with self._client() as client:
                resp = await client.get("/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("Model %s unreachable: %s", self.model_id, exc)
            return False

    def __repr__(self) -> str:
        return f"OllamaInvoker(model_id={self.model_id!r}, endpoint={self.endpoint!r})"


def build_invokers(
    config: EnsembleConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[OllamaInvoker]:
    """Build one ``OllamaInvoker`` per enabled model, in priority order."""
    invokers = [
        OllamaInvoker(
            model_id=m.model_id,
            endpoint=m.endpoint,
            base_url=config.base_url,
            timeout_seconds=m.timeout_seconds,
            transport=transport,
        )
        for m in config.models
        if m.enabled
    ]
    logger.debug("Built %d model invokers: %s", len(invokers), [i.model_id for i in invokers])
    return invokers


async def _check_model_health_async(invokers: Sequence[OllamaInvoker]) -> dict[str, Any]:
    results = await asyncio.gather(*(inv.ping() for inv in invokers))
    models = {inv.model_id: ok for inv, ok in zip(invokers, results)}
    available = sum(1 for ok in models.values() if ok)
    return {
        "status": "healthy" if available >= 2 else "degraded",
        "available": available,
        "total": len(invokers),
        "models": models,
    }


def check_model_health(invokers: Sequence[OllamaInvoker]) -> dict[str, Any]:
    """Ping every model server concurrently.

    Returns:
        Dict with ``status`` (``"healthy"`` when at least two models respond,
        else ``"degraded"``), ``available``, ``total`` and per-model ``models``.
    """
    return asyncio.run(_check_model_health_async(invokers))
