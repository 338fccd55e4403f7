"""
CIM rating engine - deterministic underwriting heuristics over CIM text

Everything here is pure text processing: pull figures out of the CIM and
the generated memo, score five risk dimensions, and project five years of
cash to equity. No LLM calls.
"""
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from utils.shared_utils import clamp

Pattern = Union[str, re.Pattern]

MONEY_SUFFIXES = r"k|m|mm|million|b|bn|billion"
SUFFIX_MULTIPLIERS = {
    "k": 1_000,
    "m": 1_000_000,
    "mm": 1_000_000,
    "million": 1_000_000,
    "b": 1_000_000_000,
    "bn": 1_000_000_000,
    "billion": 1_000_000_000,
}

SECTION_HEADING = re.compile(r"^(##\s+|(\d{1,2}[\).])\s+|[A-Z][A-Z\s/&-]{3,40}:)\s*")
LEADING_RATING_JSON = re.compile(r"^\s*RATING_JSON:\s*\{[\s\S]*?\}\s*", re.IGNORECASE)
LEADING_RATING_BLOCK = re.compile(r"^\s*RATING_JSON:\s*[\s\S]*?\n---\s*", re.IGNORECASE)

# Field label sets and plausible ranges for figure extraction
PRICE_LABELS = (r"asking\s+price", r"purchase\s+price", r"\btransaction\s+value\b")
SDE_LABELS = (r"\bttm\s+sde\b", r"\bsde\b", r"seller[’']s discretionary earnings")
REVENUE_LABELS = (r"\bttm\s+revenue\b", r"\brevenue\b")
SBA_LOAN_LABELS = (r"\bestimated\s+sba\s+loan\b", r"\bsba\s+loan\b")

PRICE_RANGE = (50_000, 50_000_000)
SDE_RANGE = (10_000, 20_000_000)
REVENUE_RANGE = (50_000, 200_000_000)
SBA_LOAN_RANGE = (50_000, 100_000_000)
SBA_LOAN_TO_PRICE = 0.85

WEAK_ADDBACKS = (
    "lost revenue opportunity",
    "lost opportunity",
    "pro forma",
    "run-rate",
    "synergy",
    "management fee",
    "family payroll",
    "owner salary addback",
    "discretionary travel",
    "meals & entertainment",
    "meals and entertainment",
    "one-time",
    "non-recurring",
)
STRONG_ADDBACKS = (
    "one-time legal",
    "one-time lawsuit",
    "insurance claim",
    "owner personal expenses",
    "non-operating",
)

SUB_SCORE_WEIGHTS = {
    "cashflow": 0.30,
    "durability": 0.20,
    "operations": 0.15,
    "financing": 0.20,
    "valuation": 0.15,
}

GRADE_BANDS = (
    (97, "A+"), (93, "A"), (89, "A-"),
    (85, "B+"), (80, "B"), (75, "B-"),
    (70, "C+"), (64, "C"), (58, "C-"),
    (50, "D"),
)

VERDICT_BANDS = (
    (90, "Strong — pursue",
     "Strong overall profile across cashflow, durability, operations, and financing."),
    (78, "Good — diligence",
     "Solid deal signals — validate diligence items and keep structure tight."),
    (65, "Mixed — structure",
     "Mixed signals — you’ll need downside protection and clean verification."),
    (52, "High risk — price dependent",
     "Higher risk — proceed only with favorable pricing/structure and clear fixes."),
)
FALLBACK_VERDICT = (
    "Avoid — do not pursue",
    "Weak profile — risk of value erosion without major deal/operational changes.",
)

MAX_DRIVERS = 6


# ---------------------------------------------------------------------------
# Memo sections
# ---------------------------------------------------------------------------

def parse_sections(raw: str) -> List[Dict[str, str]]:
    """
    Split a memo into titled sections.

    Headings are ``## Title``, numbered lines (``1. Title``) or an
    upper-case label ending in a colon. Text before the first heading
    lands in an "Analysis" section; empty sections are dropped.
    """
    cleaned = LEADING_RATING_JSON.sub("", raw or "", count=1)
    cleaned = LEADING_RATING_BLOCK.sub("", cleaned, count=1).strip()

    sections: List[Dict[str, str]] = []
    title = "Analysis"
    body: List[str] = []

    def flush():
        if "".join(body).strip():
            sections.append({"title": title, "body": "\n".join(body).strip()})
        body.clear()

    for line in re.split(r"\r?\n", cleaned):
        stripped = line.strip()
        if SECTION_HEADING.match(stripped):
            flush()
            heading = re.sub(r"^##\s*", "", line)
            heading = re.sub(r"^\d{1,2}[\).]\s*", "", heading)
            title = re.sub(r":$", "", heading).strip()
        else:
            body.append(line)
    flush()

    return sections or [{"title": "Analysis", "body": cleaned}]


def strip_rating_json(text: str) -> str:
    """Remove any ``RATING_JSON: {...}`` block a model emits despite instructions."""
    text = re.sub(r"RATING_JSON:\s*\{[\s\S]*?\}\s*---?", "", text or "", flags=re.IGNORECASE)
    text = re.sub(r"RATING_JSON:\s*\{[\s\S]*?\}", "", text, flags=re.IGNORECASE)
    return text.strip()


# ---------------------------------------------------------------------------
# Figure extraction
# ---------------------------------------------------------------------------

def norm_text(text: str) -> str:
    return text.replace("\u00a0", " ").strip()


def parse_money_strict(raw: str) -> Optional[Dict[str, Any]]:
    """
    Parse a money-looking token such as ``$1.2M``, ``450,000`` or ``3.5 million``.

    Percentages are rejected, and a bare number only counts as money when
    it is at least 1,000.

    Returns:
        Dict with ``raw``, ``value``, ``hasDollar``, ``hasSuffix`` and
        ``commaCount``, or None
    """
    s = raw.strip()
    if "%" in s:
        return None

    has_dollar = "$" in s
    has_suffix = re.search(rf"\b({MONEY_SUFFIXES})\b", s, re.IGNORECASE) is not None
    comma_count = s.count(",")

    cleaned = s.replace("$", "").replace(",", "").strip().lower()
    match = re.match(rf"^(-?\d+(\.\d+)?)(\s*({MONEY_SUFFIXES}))?$", cleaned, re.IGNORECASE)
    if not match:
        return None

    base = float(match.group(1))
    if not math.isfinite(base):
        return None

    value = base * SUFFIX_MULTIPLIERS.get((match.group(4) or "").lower(), 1)

    looks_like_money = has_dollar or has_suffix or comma_count >= 1 or abs(value) >= 1000
    if not looks_like_money:
        return None

    return {
        "raw": s,
        "value": value,
        "hasDollar": has_dollar,
        "hasSuffix": has_suffix,
        "commaCount": comma_count,
    }


def find_money_after_label(text: str, label: str) -> Optional[Dict[str, Any]]:
    """First money token within 140 characters after ``label`` (a regex)."""
    pattern = (
        rf"{label}[\s\S]{{0,140}}?"
        rf"(\$\s*-?\d[\d,]*(?:\.\d+)?\s*(?:{MONEY_SUFFIXES})?"
        rf"|\b-?\d[\d,]*(?:\.\d+)?\s*(?:{MONEY_SUFFIXES})\b)"
    )
    match = re.search(pattern, norm_text(text), re.IGNORECASE)
    if not match or not match.group(1):
        return None
    return parse_money_strict(match.group(1))


def best_money_for_field(hits: Iterable[Optional[Dict[str, Any]]], value_range: Sequence[float]) -> Optional[float]:
    """Largest hit value inside ``value_range`` (inclusive), or None."""
    low, high = value_range
    values = [
        h["value"] for h in hits
        if h and math.isfinite(h["value"]) and low <= h["value"] <= high
    ]
    return max(values) if values else None


def extract_percent_near(text: str, label: str) -> Optional[float]:
    """Percentage within 120 characters after ``label``, as a fraction."""
    match = re.search(rf"{label}[\s\S]{{0,120}}?(\d+(?:\.\d+)?)\s*%", norm_text(text), re.IGNORECASE)
    if not match:
        return None
    return float(match.group(1)) / 100


def has_any(text: str, patterns: Iterable[Pattern]) -> bool:
    lowered = text.lower()
    for p in patterns:
        if isinstance(p, str):
            if p in lowered:
                return True
        elif p.search(lowered):
            return True
    return False


def count_hits(text: str, pattern: str) -> int:
    return len(re.findall(pattern, text.lower()))


def find_owner_hours(text: str) -> Optional[float]:
    """Owner hours per week; a range such as "50-60 hours" yields its midpoint."""
    t = norm_text(text).lower()

    hour_range = (
        re.search(r"(\d{1,3})\s*(?:–|-|to)\s*(\d{1,3})\s*(?:hours|hrs)", t)
        or re.search(r"(\d{1,3})\s*(?:–|-|to)\s*(\d{1,3})\s*h\b", t)
    )
    if hour_range:
        return (float(hour_range.group(1)) + float(hour_range.group(2))) / 2

    single = (
        re.search(r"(\d{1,3})\s*(?:hours|hrs)\s*(?:/|per)?\s*(?:week|wk)", t)
        or re.search(r"works?\s*(?:~|about)?\s*(\d{1,3})\s*(?:hours|hrs)", t)
    )
    if single:
        return float(single.group(1))
    return None


def extract_dscr(text: str) -> Optional[float]:
    match = re.search(r"\bdscr\b\s*[:=]?\s*(\d+(?:\.\d+)?)\s*x?", norm_text(text), re.IGNORECASE)
    return float(match.group(1)) if match else None


def extract_multiple(text: str) -> Optional[float]:
    t = norm_text(text)
    match = (
        re.search(r"\bmultiple\b[^\d]{0,20}(\d+(?:\.\d+)?)\s*x", t, re.IGNORECASE)
        or re.search(r"\bprice\s*/\s*sde\b[^\d]{0,20}(\d+(?:\.\d+)?)\s*x", t, re.IGNORECASE)
        or re.search(r"\bsde\s*multiple\b[^\d]{0,20}(\d+(?:\.\d+)?)\s*x", t, re.IGNORECASE)
    )
    return float(match.group(1)) if match else None


def detect_addbacks_risk(text: str) -> Dict[str, Any]:
    """
    Score how aggressive the add-backs look.

    Soft add-backs (pro forma, run-rate, synergies) raise the risk;
    documented one-offs (legal, insurance claims) lower it.

    Returns:
        Dict with ``risk`` in [0, 1] and an optional ``note``
    """
    t = text.lower()
    weak_hits = sum(1 for w in WEAK_ADDBACKS if w in t)
    strong_hits = sum(1 for w in STRONG_ADDBACKS if w in t)

    risk = clamp(0.15 * weak_hits - 0.05 * strong_hits, 0, 1)

    if risk >= 0.55:
        return {"risk": risk, "note": "Add-backs look aggressive / pro-forma heavy."}
    if risk >= 0.25:
        return {"risk": risk, "note": "Some add-backs need verification."}
    return {"risk": risk, "note": None}


def extract_deal_figures(input_text: str, model_output: Optional[str] = None) -> Dict[str, Optional[float]]:
    """
    Pull price, revenue, SDE and SBA loan size from CIM text and memo.

    When no price is stated but an SBA loan is, the price is inferred
    assuming the loan covers 85% of it.
    """
    blob = norm_text("\n\n".join(part for part in (input_text, model_output) if part))

    def best(labels, value_range):
        return best_money_for_field((find_money_after_label(blob, label) for label in labels), value_range)

    price = best(PRICE_LABELS, PRICE_RANGE)
    sde = best(SDE_LABELS, SDE_RANGE)
    revenue = best(REVENUE_LABELS, REVENUE_RANGE)
    sba_loan = best(SBA_LOAN_LABELS, SBA_LOAN_RANGE)

    if price is None and sba_loan:
        price = sba_loan / SBA_LOAN_TO_PRICE

    return {"price": price, "revenue": revenue, "sde": sde, "sbaLoan": sba_loan}


# ---------------------------------------------------------------------------
# Rating
# ---------------------------------------------------------------------------

def _grade_for(score: int) -> str:
    for threshold, grade in GRADE_BANDS:
        if score >= threshold:
            return grade
    return "F"


def _verdict_for(score: int):
    for threshold, verdict, summary in VERDICT_BANDS:
        if score >= threshold:
            return verdict, summary
    return FALLBACK_VERDICT


def _uniq(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))[:MAX_DRIVERS]


def underwrite_rating(input_text: str, model_output: Optional[str] = None) -> Dict[str, Any]:
    """
    Deterministic 0-100 underwriting score for a CIM.

    Five sub-scores (cash flow quality, durability, operations, financing,
    valuation) start near neutral, move on keyword and figure signals and
    are clamped to [0.05, 0.95]. The weighted total is discounted 3% for
    each missing core signal (DSCR, multiple, owner hours).

    Args:
        input_text: CIM text the user submitted
        model_output: Generated memo, scanned as extra evidence

    Returns:
        Dict with ``score``, ``grade``, ``verdict``, ``summary``,
        ``subScores`` and ``drivers`` (positives/negatives/neutrals)
    """
    combined = norm_text("\n\n".join(part for part in (input_text, model_output) if part))
    t = combined.lower()

    recurring = count_hits(t, r"\b(recurring|subscription|maintenance\s+contract|annual\s+contract|contracted|reoccurring)\b")
    contracts = count_hits(t, r"\b(contract|renewal|retention|renew)\b")

    diversification = has_any(t, [
        "diversif",
        "broad customer base",
        "no single customer",
        "top 10 customers",
        "customer concentration below",
    ])
    concentration = has_any(t, ["concentration", "top customer", "single customer", "key customer"])
    seasonality = has_any(t, ["seasonal", "weather-dependent", "highly seasonal"])
    lawsuits = has_any(t, ["lawsuit", "litigation", "claim", "settlement"])
    union = has_any(t, ["union"])
    churn = has_any(t, ["churn", "cancellation", "declining renewals"])
    capex_heavy = has_any(t, [
        "capex heavy",
        "fleet replacement",
        "equipment replacement",
        "significant capex",
        "large capital expenditure",
    ])

    owner_hours = find_owner_hours(combined)
    owner_dependent = has_any(t, [
        "owner handles",
        "owner-managed",
        "owner is the",
        "no manager",
        "no operations manager",
        "all handled by owner",
        "owner works",
        "owner runs",
    ])
    lease_short = has_any(t, [
        re.compile(r"lease\s+expires?\s+in\s+(?:\d{1,2})\s+months", re.IGNORECASE),
        "month-to-month",
        "no renewal terms",
        "short lease term",
    ])
    has_loss_years = (
        has_any(t, [
            re.compile(r"net income\s*[:=]?\s*\(\$?", re.IGNORECASE),
            re.compile(r"\bloss[-\s]?making\b", re.IGNORECASE),
        ])
        or count_hits(t, r"\(\$\s*\d[\d,]*") >= 1
    )

    dscr = extract_dscr(combined)
    multiple = extract_multiple(combined)
    seller_note_pct = extract_percent_near(combined, r"seller\s+(?:note|financing)")
    down_payment_pct = extract_percent_near(combined, r"\bdown\s*payment\b")

    sba_mentioned = has_any(t, ["sba", "7(a)", "504"])
    sba_eligible_language = has_any(t, ["sba eligible", "sba-financeable", "financeable"])

    addbacks = detect_addbacks_risk(combined)

    positives: List[str] = []
    negatives: List[str] = []
    neutrals: List[str] = []

    # Cash flow quality
    cashflow = 0.55
    if has_loss_years:
        cashflow -= 0.18
    cashflow -= 0.22 * addbacks["risk"]
    cashflow += clamp((contracts + recurring) / 10, 0, 0.18)
    cashflow = clamp(cashflow, 0.05, 0.95)

    if has_loss_years:
        negatives.append("Loss / negative income appears in the materials.")
    else:
        positives.append("No explicit loss years detected.")
    if addbacks["note"]:
        negatives.append(addbacks["note"])
    if contracts + recurring >= 3:
        positives.append("Contract/recurring language shows up repeatedly.")

    # Revenue durability
    durability = 0.55
    durability += clamp(recurring / 8, 0, 0.18)
    durability += 0.10 if diversification else -0.04
    durability -= 0.12 if concentration else 0
    durability -= 0.08 if seasonality else 0
    durability -= 0.10 if churn else 0
    durability = clamp(durability, 0.05, 0.95)

    if diversification:
        positives.append("Customer base appears diversified.")
    if concentration:
        negatives.append("Customer concentration risk mentioned.")
    if seasonality:
        negatives.append("Seasonality risk mentioned.")
    if churn:
        negatives.append("Churn / cancellations mentioned.")

    # Operations
    ops = 0.60
    if owner_hours is not None:
        hrs = clamp(owner_hours, 0, 80)
        ops -= clamp((hrs - 35) / 45, 0, 1) * 0.22
        ops += clamp((25 - hrs) / 25, 0, 1) * 0.10
    else:
        neutrals.append("Owner hours not specified.")
    if owner_dependent:
        ops -= 0.12
    if lease_short:
        ops -= 0.08
    if capex_heavy:
        ops -= 0.08
    if union:
        ops -= 0.06
    if lawsuits:
        ops -= 0.08
    ops = clamp(ops, 0.05, 0.95)

    if owner_hours is not None:
        neutrals.append(f"Owner time: ~{_js_round(owner_hours)} hrs/wk (if accurate).")
    if owner_dependent:
        negatives.append("Owner dependency language appears.")
    else:
        neutrals.append("Owner dependency not clearly flagged.")
    if lease_short:
        negatives.append("Lease horizon appears short / uncertain.")
    if capex_heavy:
        negatives.append("Capex replacement burden mentioned.")
    if lawsuits:
        negatives.append("Legal / litigation language appears.")

    # Financing
    finance = 0.58
    if sba_mentioned:
        finance += 0.06
    if sba_eligible_language:
        finance += 0.05

    if dscr is not None:
        if dscr >= 1.6:
            finance += 0.18
        elif dscr >= 1.4:
            finance += 0.14
        elif dscr >= 1.25:
            finance += 0.08
        elif dscr >= 1.1:
            finance -= 0.06
        else:
            finance -= 0.16
        neutrals.append(f"DSCR cited: {dscr:.2f}x (if consistent with lender calc).")
    else:
        neutrals.append("DSCR not detected.")

    if seller_note_pct is not None:
        if seller_note_pct >= 0.1:
            finance += 0.06
        if seller_note_pct >= 0.2:
            finance += 0.04
        positives.append(f"Seller financing mentioned ({seller_note_pct * 100:.0f}%).")
    else:
        neutrals.append("Seller financing not specified.")

    if down_payment_pct is not None:
        if down_payment_pct <= 0.1:
            finance -= 0.03
        if down_payment_pct >= 0.15:
            finance += 0.02

    finance = clamp(finance, 0.05, 0.95)

    # Valuation
    valuation = 0.56
    if multiple is not None:
        if multiple <= 3.0:
            valuation += 0.16
        elif multiple <= 3.8:
            valuation += 0.10
        elif multiple <= 4.5:
            valuation += 0.03
        elif multiple <= 5.25:
            valuation -= 0.08
        else:
            valuation -= 0.14
        neutrals.append(f"SDE multiple cited: ~{multiple:.1f}x (if correct).")
    else:
        neutrals.append("Multiple not detected.")

    no_seller_fin = has_any(t, ["seller financing: none", "no seller financing", "seller note: none"])
    if no_seller_fin:
        valuation -= 0.06
    asset_sale = has_any(t, ["asset sale preferred", "asset sale"])
    if asset_sale:
        valuation += 0.04
    valuation = clamp(valuation, 0.05, 0.95)

    if asset_sale:
        positives.append("Asset sale language present (usually cleaner risk profile).")
    if no_seller_fin:
        negatives.append("Seller financing appears unavailable.")

    sub_scores = {
        "cashflow": cashflow,
        "durability": durability,
        "operations": ops,
        "financing": finance,
        "valuation": valuation,
    }
    score_float = sum(sub_scores[k] * w for k, w in SUB_SCORE_WEIGHTS.items())

    missing_core = sum(1 for v in (dscr, multiple, owner_hours) if v is None)
    confidence_adj = 1 - clamp(missing_core * 0.03, 0, 0.09)
    score = int(clamp(_js_round(score_float * 100 * confidence_adj), 0, 100))

    verdict, summary = _verdict_for(score)
    return {
        "score": score,
        "grade": _grade_for(score),
        "verdict": verdict,
        "summary": summary,
        "subScores": {k: round(v, 4) for k, v in sub_scores.items()},
        "drivers": {
            "positives": _uniq(positives),
            "negatives": _uniq(negatives),
            "neutrals": _uniq(neutrals),
        },
    }


def _js_round(value: float) -> int:
    # half-up like the web client, not banker's rounding
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Five-year projection
# ---------------------------------------------------------------------------

def amort_monthly_payment(principal: float, annual_rate: float, years: float) -> float:
    """Monthly payment with ``annual_rate`` as a fraction (0.105 = 10.5%)."""
    r = annual_rate / 12
    n = years * 12
    if principal <= 0 or years <= 0:
        return 0.0
    if r <= 0:
        return principal / n
    return principal * r / (1 - (1 + r) ** -n)


def build_projection(
    purchase_price: float,
    revenue0: Optional[float] = None,
    sde0: Optional[float] = None,
    debt_pct: float = 0.85,
    interest_rate: float = 0.105,
    term_years: float = 10,
    growth_rate: float = 0.06,
    margin_ramp_pct: float = 0.0,
    capex_pct: float = 0.015,
    years: int = 5,
) -> Dict[str, Any]:
    """
    Project cash to equity for a leveraged acquisition.

    Revenue and SDE grow at ``growth_rate``; SDE additionally compounds by
    ``margin_ramp_pct``. Without a stated SDE, 12% of revenue is assumed.
    Capex is a share of revenue. Break-even is the first year cumulative
    cash to equity recovers the equity invested.

    Returns:
        Dict with ``rows``, ``equityInvested`` and ``breakEvenYear``
    """
    debt = purchase_price * debt_pct
    equity_invested = max(0.0, purchase_price - debt)

    annual_debt_service = amort_monthly_payment(debt, interest_rate, term_years) * 12

    rows = []
    cumulative = 0.0
    break_even_year = None

    for year in range(1, years + 1):
        growth = (1 + growth_rate) ** (year - 1)
        revenue = revenue0 * growth if revenue0 is not None else None

        if sde0 is not None:
            base_sde = sde0 * growth
        elif revenue is not None:
            base_sde = revenue * 0.12
        else:
            base_sde = None

        sde = base_sde * (1 + margin_ramp_pct) ** (year - 1) if base_sde is not None else None
        capex = revenue * capex_pct if revenue is not None else 0.0

        cash_to_equity = max(0.0, sde - annual_debt_service - capex) if sde is not None else None
        dscr = sde / annual_debt_service if sde is not None and annual_debt_service > 0 else None

        if cash_to_equity is not None:
            cumulative += cash_to_equity
            if break_even_year is None and equity_invested > 0 and cumulative >= equity_invested:
                break_even_year = year

        rows.append({
            "year": year,
            "revenue": revenue,
            "sde": sde,
            "debtService": annual_debt_service,
            "dscr": dscr,
            "cashToEquity": cash_to_equity,
            "cumCashToEquity": cumulative if cash_to_equity is not None else None,
        })

    return {"rows": rows, "equityInvested": equity_invested, "breakEvenYear": break_even_year}


def clamp_assumptions(
    debt_pct: float = 0.85,
    interest_pct: float = 10.5,
    term_years: float = 10,
    growth_rate_pct: float = 6,
    margin_ramp_pct: float = 0,
    capex_pct: float = 1.5,
) -> Dict[str, float]:
    """
    Convert UI-style assumptions (mostly percents) into projection inputs,
    clamped to the ranges the analyzer accepts.
    """
    return {
        "debt_pct": clamp(debt_pct, 0, 0.95),
        "interest_rate": max(0.0, interest_pct / 100),
        "term_years": max(1.0, term_years),
        "growth_rate": max(-0.2, growth_rate_pct / 100),
        "margin_ramp_pct": clamp(margin_ramp_pct / 100, -0.2, 0.2),
        "capex_pct": clamp(capex_pct / 100, 0, 0.25),
    }
