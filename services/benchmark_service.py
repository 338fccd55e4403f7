"""
Benchmark Service - industry benchmark datasets loaded from yearly CSV files
"""
import csv
import logging
import math
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import BENCHMARK_DIR

logger = logging.getLogger(__name__)

FIRST_YEAR = 2018
LAST_YEAR = 2024
FREE_PREVIEW_ROWS = 3

NUMERIC_COLUMNS = (
    "median_asking_price",
    "median_sold_price",
    "median_sde",
    "price_to_sde_multiple",
    "median_revenue",
    "price_to_revenue_multiple",
    "cashflow_margin_pct",
    "listings_count",
    "days_on_market",
    "median_sba_loan",
    "sba_default_rate_pct",
)
COLUMNS = ("industry",) + NUMERIC_COLUMNS

DEFAULT_SORT = "median_revenue"
FILENAME_PATTERN = re.compile(r"^industry_metrics_(\d{4})\.csv$")


def dataset_filename(year: int) -> str:
    return f"industry_metrics_{year}.csv"


def parse_number(value: Optional[str]) -> Optional[float]:
    """
    Parse a CSV cell like ``$1,250,000``, ``18.5%`` or ``3.1``.

    Blank cells and dash placeholders are missing values.
    """
    if value is None:
        return None
    cleaned = re.sub(r"[$,%\s]", "", str(value))
    if cleaned in ("", "-", "—"):
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_rows(text: str) -> List[Dict[str, Any]]:
    """
    Parse a benchmark CSV body into typed rows.

    Quoted fields and doubled quotes follow standard CSV rules. Rows
    without an industry name are skipped.
    """
    reader = csv.DictReader(text.splitlines())
    rows = []
    for raw in reader:
        industry = (raw.get("industry") or "").strip()
        if not industry:
            continue
        row: Dict[str, Any] = {"industry": industry}
        for column in NUMERIC_COLUMNS:
            row[column] = parse_number(raw.get(column))
        rows.append(row)
    return rows


def _sort_value(row: Dict[str, Any], key: str) -> float:
    value = row.get(key)
    return value if isinstance(value, (int, float)) else -math.inf


def filter_rows(
    rows: List[Dict[str, Any]],
    search: Optional[str] = None,
    min_sold: Optional[float] = None,
    min_revenue: Optional[float] = None,
    min_sde: Optional[float] = None,
    min_margin_pct: Optional[float] = None,
    sort: str = DEFAULT_SORT,
    direction: str = "desc",
    top: int = 0,
) -> List[Dict[str, Any]]:
    """
    Search, threshold, sort and truncate benchmark rows.

    Args:
        rows: Parsed rows
        search: Case-insensitive substring of the industry name
        min_sold: Minimum number of businesses sold (listings_count)
        min_revenue: Minimum median revenue
        min_sde: Minimum median SDE
        min_margin_pct: Minimum cash flow margin, in percent
        sort: Numeric column to sort by
        direction: "desc" or "asc"
        top: Keep only the first N rows (0 keeps all)

    Returns:
        New list of rows. Missing sort values rank lowest and ties are
        broken by industry name.
    """
    needle = (search or "").strip().lower()

    def keep(row: Dict[str, Any]) -> bool:
        if needle and needle not in row["industry"].lower():
            return False
        # thresholds <= 0 are off; a missing cell counts as 0
        checks = (
            ("listings_count", min_sold),
            ("median_revenue", min_revenue),
            ("median_sde", min_sde),
            ("cashflow_margin_pct", min_margin_pct / 100 if min_margin_pct else None),
        )
        for column, minimum in checks:
            if minimum is not None and minimum > 0 and (row.get(column) or 0) < minimum:
                return False
        return True

    if sort not in NUMERIC_COLUMNS:
        sort = DEFAULT_SORT

    filtered = [row for row in rows if keep(row)]
    filtered.sort(key=lambda r: r["industry"])
    filtered.sort(key=lambda r: _sort_value(r, sort), reverse=(direction != "asc"))

    if top and top > 0:
        filtered = filtered[:top]
    return filtered


def top_snapshots(rows: List[Dict[str, Any]]) -> Dict[str, Optional[Dict[str, Any]]]:
    """Highest revenue, SDE and margin rows of a dataset."""
    def best(column: str) -> Optional[Dict[str, Any]]:
        candidates = [r for r in rows if r.get(column) is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r[column])

    return {
        "highestRevenue": best("median_revenue"),
        "highestSde": best("median_sde"),
        "highestMargin": best("cashflow_margin_pct"),
    }


class BenchmarkService:
    """Service class for reading benchmark datasets from disk"""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else BENCHMARK_DIR

    def available_years(self) -> List[int]:
        """Years with a dataset on disk, newest first."""
        if not self.data_dir.exists():
            return []
        years = []
        for path in self.data_dir.iterdir():
            match = FILENAME_PATTERN.match(path.name)
            if match and FIRST_YEAR <= int(match.group(1)) <= LAST_YEAR:
                years.append(int(match.group(1)))
        return sorted(years, reverse=True)

    def load_year(self, year: int) -> Optional[List[Dict[str, Any]]]:
        """
        Load one year's dataset.

        Returns:
            Parsed rows, or None if the year is out of range or missing
        """
        if not FIRST_YEAR <= year <= LAST_YEAR:
            return None
        path = self.data_dir / dataset_filename(year)
        if not path.is_file():
            logger.info(f"Benchmark dataset not found: {path}")
            return None
        stat = path.stat()
        return list(_load_cached(str(path), stat.st_mtime))

    def find_industry(self, year: int, industry: str) -> Optional[Dict[str, Any]]:
        rows = self.load_year(year) or []
        for row in rows:
            if row["industry"] == industry:
                return row
        lowered = industry.strip().lower()
        return next((r for r in rows if r["industry"].lower() == lowered), None)


@lru_cache(maxsize=16)
def _load_cached(path: str, mtime: float) -> tuple:
    # mtime is part of the key so edited files are re-read
    with open(path, "r", encoding="utf-8-sig") as f:
        return tuple(parse_rows(f.read()))
