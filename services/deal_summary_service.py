"""
Deal Summary Service - LLM scoring of a calculated deal against a strict rubric
"""
import json
import logging
import math
from typing import Any, Dict, Optional, Tuple

from openai import OpenAI, OpenAIError

from config.settings import settings
from utils.shared_utils import safe_hostname, safe_number

logger = logging.getLogger(__name__)

SCORING_RUBRIC = """
You are a blunt, professional small-business underwriting assistant.
Score deals from 1–10 using a STRICT rubric.

CALIBRATION:
- 10/10 must be RARE (<5% of deals).
- Most deals should score 4–7.

HARD CAPS (must follow):
- If dscr is null: cap score at 6.
- If dscr < 1.00: score MUST be 1–2.
- If 1.00 <= dscr < 1.15: score MUST be <= 3.
- If 1.15 <= dscr < 1.25: score MUST be <= 6.
- If dscr >= 1.25: score can exceed 6 ONLY if valuation and structure are strong.

VALUATION (use benchmark when present):
- If cashflowMultiple > benchmark by 20%+: subtract 2 points.
- If cashflowMultiple > benchmark by 40%+: subtract 4 points.
- If cashflowMultiple below benchmark by 10%+: add 1 point (still obey DSCR caps).
- If benchmark is missing: include a weakness about missing comps.

MARGIN QUALITY (profitMarginPct):
- <10% => -2
- 10–20% => -1
- 20–30% => 0
- >30% => +1

MISSING DATA:
- If revenue is null: -1 and include a weakness about incomplete revenue/margin.

Return ONLY valid JSON with:
{
  "score": integer 1-10,
  "scoreBreakdown": {
    "debtService": number 0-10,
    "valuation": number 0-10,
    "marginQuality": number 0-10,
    "structure": number 0-10,
    "dataQuality": number 0-10
  },
  "topWeaknesses": [3-5 short bullets],
  "summary": "one short paragraph; include DSCR and multiples when available"
}
""".strip()

MISSING_INPUTS_RESPONSE = {
    "score": 1,
    "scoreBreakdown": None,
    "topWeaknesses": [
        "Missing required inputs (Asking Price and/or SDE).",
        "Add at least Asking Price + SDE to generate a real score.",
        "Without SDE, debt coverage and valuation can’t be assessed.",
    ],
    "summary": "Enter Asking Price and SDE to generate an underwriting score and top weaknesses.",
}


def clamp_score(value: Any) -> int:
    """Round to an integer score in 1..10; unusable values become 1."""
    number = safe_number(1 if value is None else value)
    if number is None:
        return 1
    return max(1, min(10, int(math.floor(number + 0.5))))


def pct_delta(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None or b is None or not math.isfinite(a) or not math.isfinite(b) or b == 0:
        return None
    return (a - b) / b


def fallback_response(message: str) -> Dict[str, Any]:
    return {
        "score": 1,
        "scoreBreakdown": None,
        "topWeaknesses": [
            message,
            "Try again in a moment, or refresh the page.",
            "If this keeps happening, check server logs for /api/deal-calculator/ai-summary.",
        ],
        "summary": message,
    }


def build_scoring_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize the calculator's numbers and benchmark into the JSON the
    model scores. Benchmark margin arrives as a decimal and is sent as a
    percent; multiples are compared to the benchmark as rounded percent deltas.
    """
    bench = body.get("benchmark") if isinstance(body.get("benchmark"), dict) else None

    cashflow_multiple = safe_number(body.get("cashflowMultiple"))
    revenue_multiple = safe_number(body.get("revenueMultiple"))

    bench_cf = safe_number(bench.get("price_to_sde_multiple")) if bench else None
    bench_rev = safe_number(bench.get("price_to_revenue_multiple")) if bench else None
    bench_margin_dec = safe_number(bench.get("cashflow_margin_pct")) if bench else None

    cf_vs_bench = pct_delta(cashflow_multiple, bench_cf)
    rev_vs_bench = pct_delta(revenue_multiple, bench_rev)

    return {
        "industry": str(body.get("industry") if body.get("industry") is not None else "Unknown"),
        "listingHost": safe_hostname(body.get("listingUrl")),
        "askingPrice": safe_number(body.get("askingPrice")),
        "revenue": safe_number(body.get("revenue")),
        "sde": safe_number(body.get("sde")),
        "dscr": safe_number(body.get("dscr")),
        "cashflowMultiple": cashflow_multiple,
        "revenueMultiple": revenue_multiple,
        "profitMarginPct": safe_number(body.get("profitMarginPct")),
        "upfrontCash": safe_number(body.get("upfrontCash")),
        "benchmark": {
            "price_to_sde_multiple": bench_cf,
            "price_to_revenue_multiple": bench_rev,
            "cashflow_margin_pct": None if bench_margin_dec is None else bench_margin_dec * 100,
            "median_sde": safe_number(bench.get("median_sde")),
            "median_revenue": safe_number(bench.get("median_revenue")),
            "median_asking_price": safe_number(bench.get("median_asking_price")),
        } if bench else None,
        "derived": {
            "cfMultiple_vs_benchmark_pct": None if cf_vs_bench is None else int(math.floor(cf_vs_bench * 100 + 0.5)),
            "revMultiple_vs_benchmark_pct": None if rev_vs_bench is None else int(math.floor(rev_vs_bench * 100 + 0.5)),
        },
    }


def normalize_model_output(parsed: Any) -> Dict[str, Any]:
    """Coerce whatever JSON the model returned into the response shape."""
    parsed = parsed if isinstance(parsed, dict) else {}
    breakdown = parsed.get("scoreBreakdown")
    weaknesses = parsed.get("topWeaknesses")
    summary = parsed.get("summary")

    return {
        "score": clamp_score(parsed.get("score")),
        "scoreBreakdown": breakdown if isinstance(breakdown, dict) else None,
        "topWeaknesses": [str(w) for w in weaknesses[:5]] if isinstance(weaknesses, list)
        else ["No weaknesses returned (AI output missing topWeaknesses)."],
        "summary": str(summary if summary is not None else "").strip() or "No summary returned by AI.",
    }


class DealSummaryService:
    """Service class for AI deal scoring"""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_scoring_model

    def complete(self, payload: Dict[str, Any]) -> str:
        """
        Run the rubric prompt and return the raw model text.

        Raises:
            openai.OpenAIError: If the API call fails
        """
        client = OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            temperature=0.1,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": SCORING_RUBRIC},
                {"role": "user", "content": json.dumps(payload, indent=2)},
            ],
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def summarize(self, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """
        Score a deal.

        Args:
            body: Calculator output posted by the client

        Returns:
            (status_code, response_body). Missing inputs short-circuit with
            a score of 1; configuration and model failures return the
            fallback body with 500 or 502.
        """
        payload = build_scoring_payload(body)

        if payload["askingPrice"] is None or payload["sde"] is None:
            return 200, dict(MISSING_INPUTS_RESPONSE)

        if not self.api_key:
            return 500, fallback_response("Server is missing OPENAI_API_KEY.")

        try:
            raw = self.complete(payload)
        except OpenAIError as e:
            logger.error(f"OpenAI deal scoring failed: {e}", exc_info=True)
            return 502, fallback_response("AI service error while generating analysis.")

        if not raw or not raw.strip():
            return 502, fallback_response("AI returned an empty response.")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.error(f"AI JSON parse failed. Raw: {raw[:500]}")
            return 502, fallback_response("AI returned invalid JSON.")

        return 200, normalize_model_output(parsed)


def get_summary_service() -> DealSummaryService:
    return DealSummaryService()
