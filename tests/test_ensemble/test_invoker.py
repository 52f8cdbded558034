"""
Tests for ensemble_tracker/ensemble/invoker.py.

HTTP is simulated with ``httpx.MockTransport``; nothing touches the network.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ensemble_tracker.config import EnsembleConfig, ModelEndpointConfig
from ensemble_tracker.ensemble.invoker import (
    DEFAULT_CONFIDENCE,
    ModelInvoker,
    OllamaInvoker,
    build_invokers,
    build_prompt,
    check_model_health,
    parse_action,
    parse_confidence,
    parse_model_text,
    parse_reasoning,
    parse_risk,
    parse_target_price,
)
from ensemble_tracker.exceptions import ModelInvocationError
from ensemble_tracker.models.verdict import AnalysisRequest
from ensemble_tracker.taxonomy.action_taxonomy import Action, RiskLabel

SAMPLE_TEXT = (
    "Recommendation: STRONG BUY. Confidence: 85%. Risk: low. "
    "Target price: $210.50. Services revenue keeps compounding. "
    "This sentence should be cut."
)


# ── Parsing ────────────────────────────────────────────────────────────────────

class TestParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("I recommend a STRONG BUY here", Action.BUY),
            ("buy on dips", Action.BUY),
            ("Strong sell — exit now", Action.SELL),
            ("SELL", Action.SELL),
            ("Hold for now", Action.HOLD),
            ("No clear view.", Action.HOLD),
        ],
    )
    def test_action(self, text, expected):
        assert parse_action(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Confidence: 85%", 0.85),
            ("Confidence: 1%", 0.01),
            ("Confidence: 0.5%", 0.005),
            ("confidence 100 %", 1.0),
        ],
    )
    def test_confidence_percent(self, text, expected):
        assert parse_confidence(text) == pytest.approx(expected)

    def test_confidence_unsuffixed_whole_number_is_percent(self):
        assert parse_confidence("confidence: 72") == pytest.approx(0.72)

    def test_confidence_fraction(self):
        assert parse_confidence("confidence 0.65") == pytest.approx(0.65)

    def test_confidence_default(self):
        assert parse_confidence("no number here") == DEFAULT_CONFIDENCE

    def test_confidence_clamped(self):
        assert parse_confidence("confidence: 250%") == 1.0

    def test_risk(self):
        assert parse_risk("Risk level: HIGH") == RiskLabel.HIGH
        assert parse_risk("risk: medium") == RiskLabel.MEDIUM
        assert parse_risk("nothing") is None

    def test_target_price(self):
        assert parse_target_price("Target price: $210.50") == pytest.approx(210.5)
        assert parse_target_price("target 99") == pytest.approx(99.0)
        assert parse_target_price("no target") is None

    def test_reasoning_truncated_to_three_sentences(self):
        text = "One. Two! Three? Four."
        assert parse_reasoning(text) == "One. Two! Three?"

    def test_parse_model_text(self):
        verdict = parse_model_text("m1", SAMPLE_TEXT)
        assert verdict.model_id == "m1"
        assert verdict.action == Action.BUY
        assert verdict.confidence == pytest.approx(0.85)
        assert verdict.risk == RiskLabel.LOW
        assert verdict.target_price == pytest.approx(210.5)
        assert "cut" not in verdict.reasoning

    def test_prompt_contains_request(self):
        prompt = build_prompt(
            AnalysisRequest(ticker="nvda", risk_tolerance="aggressive", context={"quantity": 3})
        )
        assert "NVDA" in prompt
        assert "aggressive" in prompt
        assert "quantity: 3" in prompt


# ── OllamaInvoker ──────────────────────────────────────────────────────────────

def _invoker(handler, model_id: str = "llama3-8b") -> OllamaInvoker:
    return OllamaInvoker(
        model_id=model_id,
        endpoint="llama3:8b",
        base_url="http://models.test",
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )


class TestOllamaInvoker:
    def test_satisfies_protocol(self):
        assert isinstance(_invoker(lambda r: httpx.Response(200)), ModelInvoker)

    def test_invoke_parses_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": SAMPLE_TEXT, "done": True})

        verdict = asyncio.run(_invoker(handler).invoke(AnalysisRequest(ticker="AAPL")))
        assert seen["path"] == "/api/generate"
        assert seen["body"]["model"] == "llama3:8b"
        assert seen["body"]["stream"] is False
        assert "AAPL" in seen["body"]["prompt"]
        assert verdict.action == Action.BUY
        assert verdict.model_id == "llama3-8b"

    def test_http_error_raises(self):
        inv = _invoker(lambda r: httpx.Response(500, text="overloaded"))
        with pytest.raises(ModelInvocationError) as exc_info:
            asyncio.run(inv.invoke(AnalysisRequest(ticker="AAPL")))
        assert exc_info.value.model_id == "llama3-8b"

    def test_missing_response_field_raises(self):
        inv = _invoker(lambda r: httpx.Response(200, json={"done": True}))
        with pytest.raises(ModelInvocationError):
            asyncio.run(inv.invoke(AnalysisRequest(ticker="AAPL")))

    def test_non_json_raises(self):
        inv = _invoker(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(ModelInvocationError):
            asyncio.run(inv.invoke(AnalysisRequest(ticker="AAPL")))

    def test_connect_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ModelInvocationError):
            asyncio.run(_invoker(handler).invoke(AnalysisRequest(ticker="AAPL")))


# ── Factory + health ───────────────────────────────────────────────────────────

class TestBuildInvokers:
    def test_skips_disabled_models(self):
        config = EnsembleConfig(
            models=[
                ModelEndpointConfig(model_id="a", endpoint="a:1"),
                ModelEndpointConfig(model_id="b", endpoint="b:1", enabled=False),
                ModelEndpointConfig(model_id="c", endpoint="c:1", timeout_seconds=7.0),
            ]
        )
        invokers = build_invokers(config)
        assert [i.model_id for i in invokers] == ["a", "c"]
        assert invokers[1].timeout_seconds == 7.0
        assert invokers[0].base_url == config.base_url


class TestModelHealth:
    def _invokers(self, up: set[str]) -> list[OllamaInvoker]:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200 if request.url.host in up else 503, json={"models": []})

        return [
            OllamaInvoker(m, m, f"http://{m}", transport=httpx.MockTransport(handler))
            for m in ("m1", "m2", "m3")
        ]

    def test_healthy_with_two_models(self):
        report = check_model_health(self._invokers({"m1", "m3"}))
        assert report["status"] == "healthy"
        assert report["available"] == 2
        assert report["models"] == {"m1": True, "m2": False, "m3": True}

    def test_degraded_with_one_model(self):
        report = check_model_health(self._invokers({"m2"}))
        assert report["status"] == "degraded"
        assert report["total"] == 3
