"""
Deals Router - saved deal snapshots
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_optional_user
from crud.deal import DealRepository
from database import get_db
from utils.responses import error_response
from utils.shared_utils import iso_or_none, log_endpoint_event

logger = logging.getLogger(__name__)

deals_router = APIRouter(prefix="/api/deals", tags=["deals"])

DEFAULT_DEAL_YEAR = 2024


def _deal_year(payload: Any) -> int:
    deal_input = payload.get("dealInput") if isinstance(payload, dict) else None
    year = deal_input.get("year") if isinstance(deal_input, dict) else None
    try:
        return int(year) if year is not None else DEFAULT_DEAL_YEAR
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_DEAL_YEAR


def _deal_title(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    if payload.get("title") is not None:
        return str(payload["title"])
    deal_input = payload.get("dealInput")
    if isinstance(deal_input, dict) and deal_input.get("industry") is not None:
        return str(deal_input["industry"])
    return None


@deals_router.post("")
async def create_deal(
    payload: Any = Body(...),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Save a deal snapshot. The whole body is stored as the payload.

    Returns:
        201 with the new deal ID
    """
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    deal = await DealRepository(db).create(
        user_id=user.user_id,
        year=_deal_year(payload),
        title=_deal_title(payload),
        payload=payload,
    )
    log_endpoint_event("/api/deals", user.user_id, "success", {"deal_id": deal.id})
    return JSONResponse(status_code=201, content={"id": deal.id})


@deals_router.get("")
async def list_deals(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's saved deals, newest first."""
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    deals = await DealRepository(db).list_for_user(user.user_id)
    return {
        "deals": [
            {
                "id": d.id,
                "title": d.title,
                "year": d.year,
                "payload": d.payload,
                "createdAt": iso_or_none(d.created_at),
                "updatedAt": iso_or_none(d.updated_at),
            }
            for d in deals
        ]
    }


@deals_router.delete("/{deal_id}")
async def delete_deal(
    deal_id: str,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    try:
        deleted = await DealRepository(db).delete_for_user(user.user_id, deal_id)
    except SQLAlchemyError as e:
        logger.error(f"DELETE /api/deals/{deal_id} failed: {e}", exc_info=True)
        return error_response("Server error", status=500, ok=None, detail=str(e))

    if deleted == 0:
        return error_response("Not found", status=404, ok=None)
    return {"ok": True}
