"""
Tests for AI deal scoring: payload building, output normalization and failure handling
"""
import json

import pytest

from openai import OpenAIError

from services.deal_summary_service import (
    MISSING_INPUTS_RESPONSE,
    DealSummaryService,
    build_scoring_payload,
    clamp_score,
    normalize_model_output,
    pct_delta,
)

BENCHMARK = {
    "industry": "HVAC",
    "price_to_sde_multiple": 2.5,
    "price_to_revenue_multiple": 0.8,
    "cashflow_margin_pct": 0.2,
    "median_sde": 300_000,
    "median_revenue": 1_500_000,
    "median_asking_price": 750_000,
}

DEAL = {
    "industry": "HVAC",
    "listingUrl": "https://www.bizbuysell.com/listing/123",
    "askingPrice": 900_000,
    "revenue": 1_200_000,
    "sde": 300_000,
    "dscr": 1.4,
    "cashflowMultiple": 3.0,
    "revenueMultiple": 0.75,
    "profitMarginPct": 25,
    "upfrontCash": 95_000,
    "benchmark": BENCHMARK,
}


class StubbedSummaryService(DealSummaryService):
    """Replaces the model call with a canned reply or error."""

    def __init__(self, reply="", error=None, api_key="sk-test"):
        super().__init__(api_key=api_key, model="test-model")
        self.reply = reply
        self.error = error
        self.payloads = []

    def complete(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return self.reply


def test_clamp_score():
    assert clamp_score(7.4) == 7
    assert clamp_score(7.5) == 8
    assert clamp_score(42) == 10
    assert clamp_score(-3) == 1
    assert clamp_score("6") == 6
    assert clamp_score("great") == 1
    assert clamp_score(None) == 1


def test_pct_delta():
    assert pct_delta(3.0, 2.5) == pytest.approx(0.2)
    assert pct_delta(1, 0) is None
    assert pct_delta(None, 2) is None


def test_build_scoring_payload_converts_benchmark():
    payload = build_scoring_payload(DEAL)

    assert payload["industry"] == "HVAC"
    assert payload["listingHost"] == "www.bizbuysell.com"
    assert payload["benchmark"]["cashflow_margin_pct"] == pytest.approx(20.0)
    assert payload["benchmark"]["median_sde"] == 300_000
    assert payload["derived"] == {"cfMultiple_vs_benchmark_pct": 20, "revMultiple_vs_benchmark_pct": -6}


def test_build_scoring_payload_without_benchmark():
    payload = build_scoring_payload({"askingPrice": "500000", "sde": "bad"})
    assert payload["industry"] == "Unknown"
    assert payload["askingPrice"] == 500_000
    assert payload["sde"] is None
    assert payload["benchmark"] is None
    assert payload["derived"] == {"cfMultiple_vs_benchmark_pct": None, "revMultiple_vs_benchmark_pct": None}


def test_normalize_model_output():
    normalized = normalize_model_output({
        "score": 11,
        "scoreBreakdown": "n/a",
        "topWeaknesses": ["a", "b", "c", "d", "e", "f"],
        "summary": "  Solid coverage.  ",
    })
    assert normalized == {
        "score": 10,
        "scoreBreakdown": None,
        "topWeaknesses": ["a", "b", "c", "d", "e"],
        "summary": "Solid coverage.",
    }

    empty = normalize_model_output([])
    assert empty["score"] == 1
    assert empty["summary"] == "No summary returned by AI."
    assert empty["topWeaknesses"] == ["No weaknesses returned (AI output missing topWeaknesses)."]


def test_missing_inputs_short_circuit():
    service = StubbedSummaryService(reply="{}")
    status, body = service.summarize({"askingPrice": 900_000})
    assert status == 200
    assert body == MISSING_INPUTS_RESPONSE
    assert service.payloads == []


def test_missing_api_key_is_500():
    service = StubbedSummaryService(api_key="")
    status, body = service.summarize(DEAL)
    assert status == 500
    assert body["score"] == 1
    assert body["summary"] == "Server is missing OPENAI_API_KEY."


def test_successful_scoring():
    reply = json.dumps({
        "score": 6,
        "scoreBreakdown": {"debtService": 7, "valuation": 4, "marginQuality": 6, "structure": 6, "dataQuality": 8},
        "topWeaknesses": ["Multiple 20% above HVAC comps"],
        "summary": "DSCR 1.40x, 3.0x SDE.",
    })
    service = StubbedSummaryService(reply=reply)
    status, body = service.summarize(DEAL)

    assert status == 200
    assert body["score"] == 6
    assert body["scoreBreakdown"]["valuation"] == 4
    assert service.payloads[0]["derived"]["cfMultiple_vs_benchmark_pct"] == 20


def test_model_failures_are_502():
    status, body = StubbedSummaryService(reply="not json").summarize(DEAL)
    assert status == 502
    assert body["summary"] == "AI returned invalid JSON."

    status, body = StubbedSummaryService(reply="   ").summarize(DEAL)
    assert status == 502
    assert body["summary"] == "AI returned an empty response."

    status, body = StubbedSummaryService(error=OpenAIError("upstream down")).summarize(DEAL)
    assert status == 502
    assert body["summary"] == "AI service error while generating analysis."
