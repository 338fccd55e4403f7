"""
Benchmarks Router - industry benchmark datasets by year
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_optional_user
from database import get_db
from services.access_service import AccessService
from services.benchmark_service import (
    DEFAULT_SORT,
    FREE_PREVIEW_ROWS,
    BenchmarkService,
    filter_rows,
    top_snapshots,
)
from services.entitlements import is_paid_or_admin
from utils.responses import error_response

logger = logging.getLogger(__name__)

benchmarks_router = APIRouter(prefix="/api/benchmarks", tags=["benchmarks"])


def get_benchmark_service() -> BenchmarkService:
    return BenchmarkService()


@benchmarks_router.get("/years")
async def list_years(service: BenchmarkService = Depends(get_benchmark_service)):
    return {"years": service.available_years()}


@benchmarks_router.get("/{year}")
async def get_year(
    year: int,
    search: Optional[str] = Query(None),
    min_sold: Optional[float] = Query(None),
    min_revenue: Optional[float] = Query(None),
    min_sde: Optional[float] = Query(None),
    min_margin_pct: Optional[float] = Query(None),
    sort: str = Query(DEFAULT_SORT),
    dir: str = Query("desc"),
    top: int = Query(0, ge=0),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    service: BenchmarkService = Depends(get_benchmark_service),
):
    """
    One year's benchmark table.

    Signed-out and free users get a short unfiltered preview. Paid plans
    and admins can search, filter by thresholds, sort and take the top N;
    the highlight cards always cover the whole year.
    """
    rows = service.load_year(year)
    if rows is None:
        return error_response(f"No benchmark data for {year}", status=404, ok=None)

    paid = False
    if user:
        plan, is_admin = await AccessService(db).plan_for(user.user_id)
        paid = is_paid_or_admin(plan, is_admin)

    if not paid:
        return {
            "year": year,
            "preview": True,
            "total": len(rows),
            "rows": rows[:FREE_PREVIEW_ROWS],
            "top": None,
        }

    filtered = filter_rows(
        rows,
        search=search,
        min_sold=min_sold,
        min_revenue=min_revenue,
        min_sde=min_sde,
        min_margin_pct=min_margin_pct,
        sort=sort,
        direction=dir,
        top=top,
    )
    return {
        "year": year,
        "preview": False,
        "total": len(filtered),
        "rows": filtered,
        "top": top_snapshots(rows),
    }


@benchmarks_router.get("/{year}/{industry}")
async def get_industry(
    year: int,
    industry: str,
    service: BenchmarkService = Depends(get_benchmark_service),
):
    """Benchmark row for one industry, used by the deal calculator."""
    if service.load_year(year) is None:
        return error_response(f"No benchmark data for {year}", status=404, ok=None)
    row = service.find_industry(year, industry)
    if row is None:
        return error_response("Industry not found", status=404, ok=None)
    return {"year": year, "benchmark": row}
