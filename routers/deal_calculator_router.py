"""
Deal Calculator Router - metrics, projections and AI scoring
"""

import logging
import math
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from auth import CurrentUser, get_optional_user
from database import get_db
from routers.access_router import require_active_access
from services.access_service import AccessService
from services.deal_calculator import (
    DealInput,
    compute_deal_metrics,
    lenient_number,
    project_years,
    projection_years,
    strict_number,
)
from services.deal_summary_service import DealSummaryService, get_summary_service
from services.entitlements import (
    DEAL_ANALYZE_PRO_DAILY_LIMIT,
    FEATURE_DEAL_ANALYZE,
    deal_analyze_daily_limit,
    get_entitlements,
)
from services.usage_service import UsageService
from utils.responses import error_response, success_response
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

deal_calculator_router = APIRouter(prefix="/api/deal-calculator", tags=["deal-calculator"])


async def _paid_entitlements(
    user: Optional[CurrentUser], db: AsyncSession
) -> Tuple[Optional[JSONResponse], Optional[Dict[str, Any]]]:
    # Pro, Pro Plus and admins; a missing access row reads as free
    if not user:
        return error_response("Unauthorized", status=401, ok=None), None
    plan, is_admin = await AccessService(db).plan_for(user.user_id)
    ent = get_entitlements(plan, is_admin)
    if not (ent["isPro"] or ent["isProPlus"] or ent["isAdmin"]):
        return error_response("Subscription required", status=403, ok=None), None
    return None, {"plan": plan, "isAdmin": is_admin, **ent}


@deal_calculator_router.post("/metrics")
async def deal_metrics(
    deal: DealInput,
    context: tuple = Depends(require_active_access),
):
    """Financing metrics for a deal (multiples, loan, payment, DSCR, upfront cash)."""
    return success_response({"metrics": compute_deal_metrics(deal)})


@deal_calculator_router.post("/analyze")
async def analyze_deal(
    body: Dict[str, Any] = Body(...),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Year-by-year projection metered by the daily analyze limit.

    Pro users get 3 analyses per UTC day; Pro Plus and admins are
    unlimited. The counter is bumped before the projection is computed.
    """
    denied, ent = await _paid_entitlements(user, db)
    if denied:
        return denied

    sde_year1 = strict_number(body.get("sdeYear1"))
    annual_debt = strict_number(body.get("annualDebt"))
    upfront_cash = strict_number(body.get("upfrontCash"))
    if not all(math.isfinite(v) for v in (sde_year1, annual_debt, upfront_cash)):
        return error_response("Invalid inputs", status=400, ok=None)

    daily_limit = deal_analyze_daily_limit(ent["plan"], ent["isAdmin"])
    usage = UsageService(db)
    count = await usage.ensure_today(user.user_id, FEATURE_DEAL_ANALYZE)

    if daily_limit is not None and count >= daily_limit:
        log_endpoint_event("/api/deal-calculator/analyze", user.user_id, "limited", {"count": count})
        message = (
            f"Daily limit reached ({DEAL_ANALYZE_PRO_DAILY_LIMIT}/day). Upgrade to Pro Plus for unlimited analyzes."
            if ent["isPro"]
            else f"Daily limit reached ({daily_limit}/day)."
        )
        return error_response(message, status=429, code="DAILY_LIMIT")

    await usage.increment(user.user_id, FEATURE_DEAL_ANALYZE)

    result = project_years(
        sde_year1=sde_year1,
        annual_debt=annual_debt,
        upfront_cash=upfront_cash,
        years=projection_years(body.get("years")),
        sde_growth_pct=lenient_number(body.get("sdeGrowthPct")),
        capex_annual=lenient_number(body.get("capexAnnual")),
        tax_rate_pct=lenient_number(body.get("taxRatePct")),
    )
    return success_response(result)


@deal_calculator_router.post("/projection")
async def projection(
    body: Dict[str, Any] = Body(...),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Five-year projection for Pro Plus; non-numeric fields count as 0."""
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    plan, is_admin = await AccessService(db).plan_for(user.user_id)
    if not get_entitlements(plan, is_admin)["canUse5YearProjection"]:
        return error_response("Upgrade required", status=403, code="PROJECTION_LOCKED", ok=None)

    result = project_years(
        sde_year1=lenient_number(body.get("sdeYear1")),
        annual_debt=lenient_number(body.get("annualDebt")),
        upfront_cash=lenient_number(body.get("upfrontCash")),
        years=projection_years(body.get("years")),
        sde_growth_pct=lenient_number(body.get("sdeGrowthPct")),
        capex_annual=max(0.0, lenient_number(body.get("capexAnnual"))),
        tax_rate_pct=lenient_number(body.get("taxRatePct")),
    )
    return success_response(result)


@deal_calculator_router.post("/ai-summary")
async def ai_summary(
    body: Dict[str, Any] = Body(...),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    summary_service: DealSummaryService = Depends(get_summary_service),
):
    """
    Score a calculated deal 1-10 with the strict underwriting rubric.

    Model and configuration failures still answer with a scored body
    (score 1) so the client can render it.
    """
    denied, _ = await _paid_entitlements(user, db)
    if denied:
        return denied

    status, result = await run_in_threadpool(summary_service.summarize, body)
    log_endpoint_event(
        "/api/deal-calculator/ai-summary",
        user.user_id,
        "success" if status == 200 else "error",
        {"status": status, "score": result.get("score")},
    )
    return JSONResponse(status_code=status, content=result)
