"""
Unit tests for deal calculator financing math
"""
import math

import pytest

from services.deal_calculator import (
    DealInput,
    compute_deal_metrics,
    lenient_number,
    monthly_payment,
    project_years,
    projection_years,
    strict_number,
)


def test_monthly_payment_standard_annuity():
    # 100k over 10 years at 10%
    assert monthly_payment(100_000, 10, 10) == pytest.approx(1321.51, abs=0.01)


def test_monthly_payment_edge_cases():
    assert monthly_payment(0, 10, 10) == 0
    assert monthly_payment(-5, 10, 10) == 0
    assert monthly_payment(100_000, 10, 0) == 0
    assert monthly_payment(120_000, 0, 10) == pytest.approx(1000.0)


def test_sba_deal_metrics():
    deal = DealInput(askingPrice=1_000_000, revenue=2_000_000, sde=400_000)
    m = compute_deal_metrics(deal)

    assert m["equityPct"] == 10
    assert m["equity"] == pytest.approx(100_000)
    assert m["loanAmt"] == pytest.approx(900_000)
    assert m["cfMultiple"] == pytest.approx(2.5)
    assert m["revMultiple"] == pytest.approx(0.5)
    assert m["margin"] == pytest.approx(0.2)
    assert m["annualDebt"] == pytest.approx(monthly_payment(900_000, 10, 10) * 12)
    assert m["dscr"] == pytest.approx(400_000 / m["annualDebt"])
    assert m["upfrontCash"] == pytest.approx(100_000)


def test_custom_down_payment_and_unfinanced_closing():
    deal = DealInput(
        askingPrice=500_000,
        sde=150_000,
        financingMode="Custom",
        downPaymentPct=25,
        closingCosts=20_000,
        includeClosingInLoan=False,
    )
    m = compute_deal_metrics(deal)

    assert m["totalAcquisitionCost"] == pytest.approx(500_000)
    assert m["equity"] == pytest.approx(125_000)
    assert m["loanAmt"] == pytest.approx(375_000)
    assert m["upfrontCash"] == pytest.approx(145_000)


def test_financed_closing_costs_raise_the_loan():
    deal = DealInput(askingPrice=500_000, sde=150_000, closingCosts=20_000)
    m = compute_deal_metrics(deal)
    assert m["totalAcquisitionCost"] == pytest.approx(520_000)
    assert m["loanAmt"] == pytest.approx(468_000)


def test_extra_expenses_reduce_sde_and_never_below_zero():
    deal = DealInput(
        askingPrice=600_000,
        revenue=1_000_000,
        sde=200_000,
        extraExpenses=[{"label": "Manager", "amount": 50_000}, {"label": "Rent bump", "amount": None}],
    )
    m = compute_deal_metrics(deal)
    assert m["extraExpensesTotal"] == 50_000
    assert m["sdeAdjusted"] == 150_000
    assert m["cfMultiple"] == pytest.approx(4.0)

    wiped = compute_deal_metrics(DealInput(askingPrice=1, sde=10, extraExpenses=[{"amount": 50}]))
    assert wiped["sdeAdjusted"] == 0
    assert wiped["cfMultiple"] is None


def test_missing_inputs_give_null_ratios():
    m = compute_deal_metrics(DealInput(askingPrice=300_000))
    assert m["cfMultiple"] is None
    assert m["revMultiple"] is None
    assert m["margin"] is None
    assert m["dscr"] is None


def test_project_years_rows_and_payback():
    result = project_years(100_000, 40_000, 120_000, years=3, sde_growth_pct=10, capex_annual=10_000, tax_rate_pct=20)
    rows = result["rows"]

    assert [r["year"] for r in rows] == [1, 2, 3]
    assert rows[0]["sde"] == pytest.approx(100_000)
    assert rows[1]["sde"] == pytest.approx(110_000)
    assert rows[0]["tax"] == pytest.approx(10_000)
    assert rows[0]["net"] == pytest.approx(40_000)
    assert rows[2]["cumulative"] == pytest.approx(sum(r["net"] for r in rows))
    assert result["breakEvenYear"] == 1
    assert result["paybackYears"] == pytest.approx(3.0)


def test_project_years_negative_income_is_untaxed():
    result = project_years(50_000, 80_000, 10_000, years=2, tax_rate_pct=30)
    assert result["rows"][0]["tax"] == 0
    assert result["rows"][0]["net"] == pytest.approx(-30_000)
    assert result["breakEvenYear"] is None
    assert result["paybackYears"] is None


def test_number_coercion_helpers():
    assert strict_number(None) == 0
    assert strict_number("12.5") == 12.5
    assert math.isnan(strict_number("abc"))
    assert lenient_number("12") == 0
    assert lenient_number(7) == 7.0
    assert lenient_number(True) == 0
    assert projection_years(None) == 5
    assert projection_years(3) == 3
    assert projection_years(10_000) == 50
