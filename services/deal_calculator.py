"""
Deal calculator math: acquisition financing metrics and multi-year projections
"""
import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from utils.shared_utils import safe_div, safe_number

SBA_EQUITY_PCT = 10.0
MAX_PROJECTION_YEARS = 50


class ExtraExpense(BaseModel):
    label: str = ""
    amount: Optional[float] = None


class DealInput(BaseModel):
    """Everything the calculator form collects for one deal."""
    year: int = 2024
    listingUrl: Optional[str] = None
    industry: Optional[str] = None
    askingPrice: Optional[float] = None
    revenue: Optional[float] = None
    sde: Optional[float] = None
    financingMode: str = "SBA"
    loanTermYears: float = 10
    interestRatePct: float = 10.0
    closingCosts: float = 0
    includeClosingInLoan: bool = True
    downPaymentPct: float = 10
    extraExpenses: List[ExtraExpense] = Field(default_factory=list)
    projSdeGrowthPct: float = 3
    projTaxRatePct: float = 30
    projCapexAnnual: float = 0


def monthly_payment(principal: float, annual_rate_pct: float, term_years: float) -> float:
    """
    Level monthly payment on an amortizing loan.

    Args:
        principal: Loan amount
        annual_rate_pct: Nominal annual rate in percent (10 = 10%)
        term_years: Amortization term in years

    Returns:
        Monthly payment; 0 for empty loans, straight-line at 0% interest
    """
    n = term_years * 12
    if principal <= 0 or n <= 0:
        return 0.0
    r = annual_rate_pct / 100 / 12
    if r == 0:
        return principal / n
    return principal * r / (1 - (1 + r) ** -n)


def compute_deal_metrics(deal: DealInput) -> Dict[str, Optional[float]]:
    """
    Derive multiples, financing and coverage for a deal.

    SBA mode uses a fixed 10% equity injection; Custom mode uses the
    entered down payment. Closing costs are either financed or paid
    upfront.
    """
    asking = safe_number(deal.askingPrice)
    revenue = safe_number(deal.revenue)
    sde = safe_number(deal.sde)

    extra_total = sum(safe_number(e.amount, 0) for e in deal.extraExpenses)
    # every ratio below uses SDE net of the extra expenses
    sde = max(0.0, sde - extra_total) if sde is not None else None

    closing = safe_number(deal.closingCosts, 0)
    base_cost = (asking or 0) + (closing if deal.includeClosingInLoan else 0)

    equity_pct = SBA_EQUITY_PCT if deal.financingMode == "SBA" else safe_number(deal.downPaymentPct, 0)
    equity = base_cost * equity_pct / 100
    loan_amt = max(0.0, base_cost - equity)

    monthly = monthly_payment(loan_amt, safe_number(deal.interestRatePct, 0), safe_number(deal.loanTermYears, 0))
    annual_debt = monthly * 12
    upfront_cash = equity + (0 if deal.includeClosingInLoan else closing)

    return {
        "sdeAdjusted": sde,
        "extraExpensesTotal": extra_total,
        "cfMultiple": safe_div(asking, sde),
        "revMultiple": safe_div(asking, revenue),
        "margin": safe_div(sde, revenue),
        "totalAcquisitionCost": base_cost,
        "equityPct": equity_pct,
        "equity": equity,
        "loanAmt": loan_amt,
        "monthlyPay": monthly,
        "annualDebt": annual_debt,
        "dscr": safe_div(sde, annual_debt),
        "upfrontCash": upfront_cash,
    }


def project_years(
    sde_year1: float,
    annual_debt: float,
    upfront_cash: float,
    years: int = 5,
    sde_growth_pct: float = 0,
    capex_annual: float = 0,
    tax_rate_pct: float = 0,
) -> Dict[str, Any]:
    """
    After-debt, after-tax cash flow projection.

    SDE compounds at the growth rate; debt service and capex are flat.
    Tax applies only to positive pre-tax income.

    Returns:
        Dict with ``rows`` (year, sde, debt, capex, tax, net, cumulative),
        ``breakEvenYear`` (first year with positive net) and
        ``paybackYears`` (upfront cash over year-1 net, None if not positive)
    """
    growth = sde_growth_pct / 100
    tax_rate = tax_rate_pct / 100

    rows = []
    cumulative = 0.0
    for idx in range(years):
        sde = sde_year1 * (1 + growth) ** idx
        pre_tax = sde - annual_debt - capex_annual
        tax = pre_tax * tax_rate if pre_tax > 0 else 0.0
        net = pre_tax - tax
        cumulative += net
        rows.append({
            "year": idx + 1,
            "sde": sde,
            "debt": annual_debt,
            "capex": capex_annual,
            "tax": tax,
            "net": net,
            "cumulative": cumulative,
        })

    break_even_year = next((r["year"] for r in rows if r["net"] > 0), None)
    year1_net = rows[0]["net"] if rows else 0
    payback_years = upfront_cash / year1_net if year1_net > 0 else None

    return {"rows": rows, "breakEvenYear": break_even_year, "paybackYears": payback_years}


def strict_number(value: Any, default: float = 0) -> float:
    """
    Coerce like JavaScript ``Number(x ?? default)``: missing values use the
    default, unparseable ones become NaN so callers can reject them.
    """
    if value is None:
        return float(default)
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and not value.strip():
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def lenient_number(value: Any) -> float:
    """Anything but a finite JSON number becomes 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value) if math.isfinite(value) else 0.0


def projection_years(value: Any, default: int = 5) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return default
    return max(0, min(int(value), MAX_PROJECTION_YEARS))
