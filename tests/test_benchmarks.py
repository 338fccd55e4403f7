"""
Tests for benchmark CSV parsing, filtering and the benchmark endpoints
"""
import pytest

from services.benchmark_service import (
    BenchmarkService,
    filter_rows,
    parse_number,
    parse_rows,
    top_snapshots,
)
from tests.conftest import auth_headers

CSV_TEXT = (
    "industry,median_asking_price,median_sold_price,median_sde,price_to_sde_multiple,median_revenue,"
    "price_to_revenue_multiple,cashflow_margin_pct,listings_count,days_on_market,median_sba_loan,"
    "sba_default_rate_pct\n"
    '"Landscaping, Lawn Care","$480,000","$430,000","$165,000",2.61,"$760,000",0.57,0.217,241,137,"$387,000",0.027\n'
    'Bakery,"$200,000","$180,000","$70,000",2.57,"$520,000",0.38,0.135,55,190,-,\n'
    '"Bob\'s ""Best"" Bikes","$150,000",,"$60,000",2.5,"$400,000",0.37,0.15,12,80,"$120,000",0.03\n'
    ',"$1",,,,,,,,,,\n'
)


def test_parse_number():
    assert parse_number("$1,250,000") == 1_250_000
    assert parse_number("18.5%") == 18.5
    assert parse_number(" 3.1 ") == 3.1
    assert parse_number("") is None
    assert parse_number("-") is None
    assert parse_number("—") is None
    assert parse_number("n/a") is None
    assert parse_number(None) is None


def test_parse_rows_handles_quotes_and_blanks():
    rows = parse_rows(CSV_TEXT)
    assert [r["industry"] for r in rows] == ["Landscaping, Lawn Care", "Bakery", 'Bob\'s "Best" Bikes']
    assert rows[0]["median_revenue"] == 760_000
    assert rows[1]["median_sba_loan"] is None
    assert rows[1]["sba_default_rate_pct"] is None
    assert rows[2]["median_sold_price"] is None


def test_filter_search_thresholds_and_sort():
    rows = parse_rows(CSV_TEXT)

    assert [r["industry"] for r in filter_rows(rows, search="LAWN")] == ["Landscaping, Lawn Care"]
    assert [r["industry"] for r in filter_rows(rows, min_margin_pct=15)] == ["Landscaping, Lawn Care", 'Bob\'s "Best" Bikes']

    assert [r["industry"] for r in filter_rows(rows, min_sold=100)] == ["Landscaping, Lawn Care"]

    ascending = filter_rows(rows, sort="median_sde", direction="asc")
    assert [r["median_sde"] for r in ascending] == [60_000, 70_000, 165_000]

    assert len(filter_rows(rows, top=2)) == 2


def test_sold_threshold_uses_listings_count():
    rows = [
        {"industry": "A", "median_sold_price": 500_000.0, "listings_count": 5.0, "median_revenue": 2.0},
        {"industry": "B", "median_sold_price": 100_000.0, "listings_count": 400.0, "median_revenue": 1.0},
    ]
    assert [r["industry"] for r in filter_rows(rows, min_sold=100)] == ["B"]


def test_thresholds_treat_missing_as_zero_and_ignore_non_positive():
    rows = [
        {"industry": "Known", "median_revenue": 900.0, "median_sde": 300.0, "listings_count": 10.0,
         "cashflow_margin_pct": 0.3},
        {"industry": "Blank", "median_revenue": None, "median_sde": None, "listings_count": None,
         "cashflow_margin_pct": None},
    ]
    assert [r["industry"] for r in filter_rows(rows, min_revenue=1)] == ["Known"]
    assert [r["industry"] for r in filter_rows(rows, min_margin_pct=10)] == ["Known"]
    assert len(filter_rows(rows, min_sold=0, min_revenue=-5, min_sde=0, min_margin_pct=0)) == 2


def test_filter_missing_values_sort_last_and_ties_by_name():
    rows = [
        {"industry": "Zeta", "median_revenue": 100.0},
        {"industry": "Alpha", "median_revenue": 100.0},
        {"industry": "Gamma", "median_revenue": None},
        {"industry": "Beta", "median_revenue": 500.0},
    ]
    ordered = [r["industry"] for r in filter_rows(rows)]
    assert ordered == ["Beta", "Alpha", "Zeta", "Gamma"]


def test_unknown_sort_column_falls_back_to_revenue():
    rows = parse_rows(CSV_TEXT)
    assert filter_rows(rows, sort="drop table") == filter_rows(rows, sort="median_revenue")


def test_top_snapshots():
    rows = parse_rows(CSV_TEXT)
    top = top_snapshots(rows)
    assert top["highestRevenue"]["industry"] == "Landscaping, Lawn Care"
    assert top["highestMargin"]["industry"] == "Landscaping, Lawn Care"
    assert top_snapshots([])["highestSde"] is None


class TestBenchmarkService:
    def test_years_and_loading(self, tmp_path):
        (tmp_path / "industry_metrics_2022.csv").write_text(CSV_TEXT, encoding="utf-8")
        (tmp_path / "industry_metrics_2021.csv").write_text(CSV_TEXT, encoding="utf-8")
        (tmp_path / "industry_metrics_1999.csv").write_text(CSV_TEXT, encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignore me", encoding="utf-8")

        service = BenchmarkService(tmp_path)
        assert service.available_years() == [2022, 2021]
        assert len(service.load_year(2022)) == 3
        assert service.load_year(2019) is None
        assert service.load_year(1999) is None

    def test_find_industry_is_case_insensitive(self, tmp_path):
        (tmp_path / "industry_metrics_2022.csv").write_text(CSV_TEXT, encoding="utf-8")
        service = BenchmarkService(tmp_path)
        assert service.find_industry(2022, "bakery")["median_sde"] == 70_000
        assert service.find_industry(2022, "Florist") is None

    def test_missing_directory_has_no_years(self, tmp_path):
        assert BenchmarkService(tmp_path / "nope").available_years() == []


@pytest.mark.asyncio
async def test_years_endpoint(async_client):
    response = await async_client.get("/api/benchmarks/years")
    assert response.status_code == 200
    assert response.json()["years"] == [2024, 2023]


@pytest.mark.asyncio
async def test_anonymous_gets_preview(async_client):
    response = await async_client.get("/api/benchmarks/2024", params={"search": "car"})
    assert response.status_code == 200
    data = response.json()
    assert data["preview"] is True
    assert len(data["rows"]) == 3
    assert data["total"] == 10
    assert data["top"] is None


@pytest.mark.asyncio
async def test_paid_user_can_filter(async_client, seed_access):
    await seed_access("user_pro", plan="pro")
    response = await async_client.get(
        "/api/benchmarks/2024",
        params={"search": "car", "sort": "median_sde", "dir": "desc"},
        headers=auth_headers("user_pro"),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["preview"] is False
    assert [r["industry"] for r in data["rows"]] == ["Car Wash", "Daycare", "Landscaping, Lawn Care"]


@pytest.mark.asyncio
async def test_paid_filters_and_top_cards_cover_whole_year(async_client, seed_access):
    await seed_access("user_pro", plan="pro")
    response = await async_client.get(
        "/api/benchmarks/2024",
        params={"search": "car", "min_sold": 100, "sort": "median_sde"},
        headers=auth_headers("user_pro"),
    )
    data = response.json()
    # Car Wash has only 96 businesses sold
    assert [r["industry"] for r in data["rows"]] == ["Daycare", "Landscaping, Lawn Care"]
    assert data["total"] == 2
    assert data["top"]["highestSde"]["industry"] == "Dental Practice"
    assert data["top"]["highestRevenue"]["industry"] == "HVAC"
    assert data["top"]["highestMargin"]["industry"] == "Laundromat"


@pytest.mark.asyncio
async def test_missing_year_is_404(async_client):
    response = await async_client.get("/api/benchmarks/2019")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_industry_lookup(async_client):
    response = await async_client.get("/api/benchmarks/2024/HVAC")
    assert response.status_code == 200
    assert response.json()["benchmark"]["price_to_sde_multiple"] == 3.01

    missing = await async_client.get("/api/benchmarks/2024/Florist")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_raw_csv_is_served(async_client):
    response = await async_client.get("/data/industry_metrics_2024.csv")
    assert response.status_code == 200
    assert response.text.startswith("industry,median_asking_price")
