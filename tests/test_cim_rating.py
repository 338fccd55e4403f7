"""
Unit tests for the CIM heuristic rating engine
"""
import pytest

from services.cim_rating import (
    amort_monthly_payment,
    best_money_for_field,
    build_projection,
    clamp_assumptions,
    detect_addbacks_risk,
    extract_deal_figures,
    extract_dscr,
    extract_multiple,
    extract_percent_near,
    find_money_after_label,
    find_owner_hours,
    parse_money_strict,
    parse_sections,
    strip_rating_json,
    underwrite_rating,
)

DEAL_TEXT = (
    "Asking Price: $1,250,000.\n"
    "TTM Revenue: $2,400,000.\n"
    "TTM SDE: $420,000.\n"
    "Estimated SBA loan: $1,062,500.\n"
)

STRONG_CIM = (
    "Recurring maintenance contracts with annual contract renewals and strong retention. "
    "Broad customer base, diversified across commercial accounts. "
    "DSCR: 1.8x. SDE multiple of 2.8x. The owner spends 20 hours per week in the business. "
    "SBA eligible. Seller note of 15% available. Asset sale."
)

WEAK_CIM = (
    "Highly seasonal demand and top customer concentration. "
    "Owner handles all sales and works 70 hours per week. Pending litigation with a former supplier. "
    "Add-backs include pro forma run-rate synergy and a management fee. "
    "DSCR 1.05x. Price multiple of 6.0x. Lease is month-to-month. No seller financing."
)


class TestParseSections:
    def test_splits_on_markdown_headings_and_drops_empty(self):
        memo = "## Executive Summary\nGood business.\n## Key Metrics\nRevenue 2M\n## Empty\n"
        sections = parse_sections(memo)
        assert [s["title"] for s in sections] == ["Executive Summary", "Key Metrics"]
        assert sections[0]["body"] == "Good business."

    def test_preamble_goes_to_analysis_section(self):
        sections = parse_sections("Intro text\n1. Risks\nThin margins")
        assert sections[0] == {"title": "Analysis", "body": "Intro text"}
        assert sections[1]["title"] == "Risks"

    def test_falls_back_to_single_section(self):
        assert parse_sections("") == [{"title": "Analysis", "body": ""}]

    def test_leading_rating_json_is_removed(self):
        memo = 'RATING_JSON: {"score": 80}\n## Executive Summary\nSolid.'
        sections = parse_sections(memo)
        assert sections == [{"title": "Executive Summary", "body": "Solid."}]


def test_strip_rating_json():
    assert strip_rating_json('RATING_JSON: {"score": 80}\n---\nMemo body') == "Memo body"
    assert strip_rating_json('Memo RATING_JSON: {"grade": "A"} end') == "Memo  end"
    assert strip_rating_json("") == ""


class TestMoneyParsing:
    def test_suffixes_and_commas(self):
        assert parse_money_strict("$1.2M")["value"] == pytest.approx(1_200_000)
        assert parse_money_strict("3.5 million")["value"] == pytest.approx(3_500_000)
        assert parse_money_strict("450,000")["commaCount"] == 1
        assert parse_money_strict("2500")["value"] == 2500

    def test_rejects_percentages_and_small_bare_numbers(self):
        assert parse_money_strict("12%") is None
        assert parse_money_strict("750") is None
        assert parse_money_strict("abc") is None

    def test_find_money_after_label(self):
        hit = find_money_after_label("The asking price is set at $1.5M.", r"asking\s+price")
        assert hit["value"] == pytest.approx(1_500_000)
        assert find_money_after_label("No figures here.", r"asking\s+price") is None

    def test_best_money_for_field_keeps_largest_in_range(self):
        hits = [{"value": 40_000}, {"value": 300_000}, None, {"value": 90_000_000}]
        assert best_money_for_field(hits, (50_000, 50_000_000)) == 300_000
        assert best_money_for_field([None], (1, 2)) is None

    def test_extract_percent_near(self):
        assert extract_percent_near("Seller note of 20% over 5 years", r"seller\s+note") == pytest.approx(0.2)
        assert extract_percent_near("Seller note available", r"seller\s+note") is None


def test_extract_deal_figures():
    figures = extract_deal_figures(DEAL_TEXT)
    assert figures == {
        "price": 1_250_000,
        "revenue": 2_400_000,
        "sde": 420_000,
        "sbaLoan": 1_062_500,
    }


def test_price_is_inferred_from_sba_loan():
    figures = extract_deal_figures("SBA loan: $850,000.")
    assert figures["price"] == pytest.approx(1_000_000)


def test_signal_extractors():
    assert find_owner_hours("Owner works 50-60 hours a week") == 55
    assert find_owner_hours("about 40 hours/week") == 40
    assert find_owner_hours("no hours given") is None
    assert extract_dscr("DSCR: 1.45x") == pytest.approx(1.45)
    assert extract_dscr("coverage unknown") is None
    assert extract_multiple("priced at a multiple of 3.2x SDE") == pytest.approx(3.2)
    assert extract_multiple("Price/SDE 2.9x") == pytest.approx(2.9)


def test_addback_risk_levels():
    assert detect_addbacks_risk("clean books") == {"risk": 0, "note": None}
    some = detect_addbacks_risk("pro forma adjustments and non-recurring items")
    assert some["note"] == "Some add-backs need verification."
    heavy = detect_addbacks_risk("pro forma, run-rate, synergy and management fee add-backs")
    assert heavy["note"] == "Add-backs look aggressive / pro-forma heavy."


class TestUnderwriteRating:
    def test_empty_text_scores_neutral_with_confidence_discount(self):
        rating = underwrite_rating("")
        assert rating["score"] == 51
        assert rating["grade"] == "D"
        assert rating["verdict"] == "Avoid — do not pursue"
        assert "DSCR not detected." in rating["drivers"]["neutrals"]
        assert rating["drivers"]["positives"] == ["No explicit loss years detected."]

    def test_strong_cim_beats_weak_cim(self):
        strong = underwrite_rating(STRONG_CIM)
        weak = underwrite_rating(WEAK_CIM)
        assert strong["score"] > weak["score"]
        assert 0 <= weak["score"] <= 100
        assert "Seller financing mentioned (15%)." in strong["drivers"]["positives"]
        assert "Customer base appears diversified." in strong["drivers"]["positives"]

    def test_weak_cim_drivers(self):
        negatives = underwrite_rating(WEAK_CIM)["drivers"]["negatives"]
        assert "Customer concentration risk mentioned." in negatives
        assert "Seasonality risk mentioned." in negatives
        assert len(negatives) <= 6

    def test_memo_text_counts_as_evidence(self):
        without = underwrite_rating("Plain CIM.")
        with_memo = underwrite_rating("Plain CIM.", "## Key Metrics\nDSCR: 1.7x")
        assert with_memo["subScores"]["financing"] > without["subScores"]["financing"]


class TestProjection:
    def test_revenue_fallback_and_break_even(self):
        proj = build_projection(1_000_000, revenue0=2_000_000)
        rows = proj["rows"]
        debt_service = amort_monthly_payment(850_000, 0.105, 10) * 12

        assert len(rows) == 5
        assert proj["equityInvested"] == pytest.approx(150_000)
        assert rows[0]["sde"] == pytest.approx(240_000)
        assert rows[1]["revenue"] == pytest.approx(2_120_000)
        assert rows[0]["debtService"] == pytest.approx(debt_service)
        assert rows[0]["cashToEquity"] == pytest.approx(240_000 - debt_service - 30_000)
        assert proj["breakEvenYear"] == 2

    def test_missing_revenue_and_sde_leaves_rows_empty(self):
        proj = build_projection(500_000)
        assert proj["rows"][0]["sde"] is None
        assert proj["rows"][0]["cashToEquity"] is None
        assert proj["breakEvenYear"] is None

    def test_cash_to_equity_is_floored_at_zero(self):
        proj = build_projection(5_000_000, sde0=100_000)
        assert all(r["cashToEquity"] == 0 for r in proj["rows"])

    def test_clamp_assumptions(self):
        assert clamp_assumptions(debt_pct=1.5, interest_pct=-5, term_years=0,
                                 growth_rate_pct=-50, margin_ramp_pct=50, capex_pct=40) == {
            "debt_pct": 0.95,
            "interest_rate": 0.0,
            "term_years": 1.0,
            "growth_rate": -0.2,
            "margin_ramp_pct": 0.2,
            "capex_pct": 0.25,
        }
