"""
Access Router - plan, entitlement and usage endpoints
"""

import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_current_user, get_optional_user
from database import get_db
from services.access_service import AccessService
from services.entitlements import get_entitlements
from utils.responses import error_response, success_response

logger = logging.getLogger(__name__)

access_router = APIRouter(prefix="/api", tags=["access"])


async def require_active_access(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Tuple[CurrentUser, str, bool]:
    """
    Dependency for deal calculator endpoints.

    Returns:
        (user, plan, is_admin)

    Raises:
        HTTPException: 401 when signed out, 403 when the plan does not
            include the deal calculator
    """
    plan, is_admin = await AccessService(db).plan_for(user.user_id)
    if not get_entitlements(plan, is_admin)["canUseDealCalculator"]:
        raise HTTPException(status_code=403, detail="Subscription required")
    return user, plan, is_admin


@access_router.get("/access")
async def get_access(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Plan and trial state for the signed-in user; creates the row on first call."""
    if not user:
        return error_response("Not signed in", status=401)
    access = await AccessService(db).get_access_summary(user.user_id)
    return success_response({"access": access})


@access_router.get("/me/access")
async def get_me_access(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Plan, identity and entitlements (with daily limits) for the signed-in user.

    The access row is upserted with the email reported by the session token.
    """
    if not user:
        return error_response("Unauthorized", status=401)
    return await AccessService(db).get_me_access(user.user_id, user.email, user.email_verified)


@access_router.get("/me/usage")
async def get_me_usage(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    if not user:
        return {"enabled": False}
    return await AccessService(db).get_deal_usage(user.user_id)
