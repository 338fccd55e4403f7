"""
CIM Router - underwriting memo generation and heuristic rating
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from auth import CurrentUser, get_optional_user
from database import get_db
from services.access_service import AccessService
from services.cim_rating import (
    build_projection,
    clamp_assumptions,
    extract_deal_figures,
    parse_sections,
    underwrite_rating,
)
from services.cim_service import CimService, extract_upload_text, get_cim_service
from services.entitlements import FEATURE_CIM_ANALYZER, cim_daily_limit, get_entitlements
from services.usage_service import UsageService
from utils.responses import error_response
from utils.shared_utils import log_endpoint_event, safe_number

logger = logging.getLogger(__name__)

cim_router = APIRouter(prefix="/api/cim", tags=["cim"])

NO_STORE = {"Cache-Control": "no-store"}

# Request keys of the analyzer's assumption panel -> clamp_assumptions kwargs
ASSUMPTION_KEYS = {
    "debtPct": "debt_pct",
    "interestPct": "interest_pct",
    "termYears": "term_years",
    "growthRatePct": "growth_rate_pct",
    "marginRampPct": "margin_ramp_pct",
    "capexPct": "capex_pct",
}


async def _read_cim_input(request: Request):
    """
    Pull the CIM text and mode out of a JSON or multipart request.

    Returns:
        (text, mode, None) on success or (None, None, error_response)
    """
    content_type = request.headers.get("content-type") or ""

    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return None, None, error_response("Invalid JSON body", status=400, ok=None)
        body = body if isinstance(body, dict) else {}
        text = str(body.get("text") if body.get("text") is not None else "")
        mode = "fast" if body.get("mode") == "fast" else "deep"
        if not text.strip():
            return None, None, error_response("Missing text", status=400, ok=None)
        return text, mode, None

    if "multipart/form-data" in content_type:
        form = await request.form()
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            return None, None, error_response("Missing file", status=400, ok=None)

        data = await upload.read()
        text = extract_upload_text(data, filename=upload.filename, content_type=upload.content_type)
        if not text.strip():
            return None, None, error_response(
                "Could not read text from file (empty/unsupported)", status=400, ok=None
            )
        return text, "deep", None

    return None, None, error_response(f"Content-Type not supported: {content_type}", status=415, ok=None)


@cim_router.post("")
async def analyze_cim(
    request: Request,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    cim_service: CimService = Depends(get_cim_service),
):
    """
    Generate an underwriting memo for a CIM.

    Accepts ``application/json`` ``{text, mode}`` or a ``multipart/form-data``
    upload in the ``file`` field. Usage is counted only after the model
    answers, and never for admins.

    Returns:
        ``{"result": memo, "sections": [...], "rating": {...}}``
    """
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    plan, is_admin = await AccessService(db).plan_for(user.user_id)
    if not get_entitlements(plan, is_admin)["canUseCimAnalyzer"]:
        return error_response("Upgrade required to use the CIM Analyzer.", status=403, ok=None)

    usage = UsageService(db)
    daily_limit = cim_daily_limit(plan, is_admin)
    used_today = await usage.used_today(user.user_id, FEATURE_CIM_ANALYZER)
    if daily_limit is not None and used_today >= daily_limit:
        log_endpoint_event("/api/cim", user.user_id, "limited", {"used": used_today})
        return error_response(f"Daily limit reached ({daily_limit}/day).", status=429, ok=None)

    if not cim_service.configured:
        return error_response("Missing OPENAI_API_KEY", status=500, ok=None)

    text, mode, invalid = await _read_cim_input(request)
    if invalid:
        return invalid

    try:
        memo = await run_in_threadpool(cim_service.generate_memo, text, mode)
    except OpenAIError as e:
        logger.error(f"CIM memo generation failed for user {user.user_id}: {e}", exc_info=True)
        return error_response(str(e) or "Server error", status=500, ok=None)

    if not is_admin:
        await usage.increment(user.user_id, FEATURE_CIM_ANALYZER)

    log_endpoint_event("/api/cim", user.user_id, "success", {"mode": mode, "chars": len(text)})
    return JSONResponse(
        content={
            "result": memo,
            "sections": parse_sections(memo),
            "rating": underwrite_rating(text, memo),
        },
        headers=NO_STORE,
    )


@cim_router.post("/rating")
async def rate_cim(
    body: Dict[str, Any] = Body(...),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Heuristic rating, extracted figures and a 5-year debt projection for a
    CIM (and optionally its memo). No model call and no usage counted.
    """
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    plan, is_admin = await AccessService(db).plan_for(user.user_id)
    if not get_entitlements(plan, is_admin)["canUseCimAnalyzer"]:
        return error_response("Upgrade required to use the CIM Analyzer.", status=403, ok=None)

    text = str(body.get("text") or "")
    output = body.get("output")
    output = str(output) if output is not None else None
    if not text.strip() and not (output or "").strip():
        return error_response("Missing text", status=400, ok=None)

    extracted = extract_deal_figures(text, output)

    raw_assumptions = body.get("assumptions") if isinstance(body.get("assumptions"), dict) else {}
    assumption_kwargs = {}
    for key, arg in ASSUMPTION_KEYS.items():
        value = safe_number(raw_assumptions.get(key))
        if value is not None:
            assumption_kwargs[arg] = value

    projection = None
    price = extracted.get("price")
    if price and price > 0:
        projection = build_projection(
            price,
            revenue0=extracted.get("revenue"),
            sde0=extracted.get("sde"),
            **clamp_assumptions(**assumption_kwargs),
        )

    return {
        "rating": underwrite_rating(text, output),
        "extracted": extracted,
        "projection": projection,
    }
