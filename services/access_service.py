"""
Access Service - plan lookup, access row bootstrap and usage summaries
"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import PLAN_FREE
from crud.user_access import UserAccessRepository
from database_models import UserAccess
from services.entitlements import (
    CIM_DAILY_LIMITS,
    FEATURE_CIM_ANALYZER,
    FEATURE_DEAL_ANALYZE,
    deal_analyze_daily_limit,
    get_entitlements,
    is_trial_active,
    limit_snapshot,
    normalize_plan,
)
from services.usage_service import UsageService, resets_at_utc
from utils.shared_utils import iso_or_none

logger = logging.getLogger(__name__)


class AccessService:
    """Service class for plan/entitlement business logic"""

    def __init__(self, db: AsyncSession):
        """
        Initialize the access service.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db
        self.repo = UserAccessRepository(db)
        self.usage = UsageService(db)

    async def plan_for(self, user_id: str) -> Tuple[str, bool]:
        """
        Read a user's plan without creating a row.

        Returns:
            (plan, is_admin); a missing row reads as (free, False)
        """
        access = await self.repo.get_by_user_id(user_id)
        if access is None:
            return PLAN_FREE, False
        return normalize_plan(access.plan), bool(access.is_admin)

    async def get_or_create(self, user_id: str) -> UserAccess:
        return await self.repo.get_or_create(user_id)

    async def get_access_summary(self, user_id: str) -> Dict[str, Any]:
        """
        Build the ``GET /api/access`` payload, creating the row on first sight.

        Returns:
            Dict with plan and trial fields in camelCase
        """
        access = await self.repo.get_or_create(user_id)
        return {
            "plan": normalize_plan(access.plan),
            "trialStartedAt": iso_or_none(access.trial_started_at),
            "trialEndsAt": iso_or_none(access.trial_ends_at),
            "trialActive": is_trial_active(access.trial_ends_at),
            "createdAt": iso_or_none(access.created_at),
            "updatedAt": iso_or_none(access.updated_at),
        }

    async def sync_identity(self, user_id: str, email: Optional[str], email_verified: bool) -> UserAccess:
        """Upsert the row with the email the identity provider reports."""
        update_fields: Dict[str, Any] = {"email_verified": email_verified}
        if email:
            update_fields["email"] = email
        return await self.repo.upsert(
            user_id,
            update_fields,
            create_fields={"email": email, "email_verified": email_verified},
        )

    async def get_me_access(self, user_id: str, email: Optional[str], email_verified: bool) -> Dict[str, Any]:
        """
        Build the ``GET /api/me/access`` payload.

        Args:
            user_id: External user ID
            email: Email claim from the session token (may be None)
            email_verified: Verification claim from the session token

        Returns:
            Dict with plan, admin flag, user identity and entitlements with
            per-feature daily limits
        """
        access = await self.sync_identity(user_id, email, email_verified)
        plan = normalize_plan(access.plan)
        is_admin = bool(access.is_admin)
        entitlements: Dict[str, Any] = dict(get_entitlements(plan, is_admin))

        resets_at = resets_at_utc()
        cim_used = await self.usage.used_today(user_id, FEATURE_CIM_ANALYZER)
        deal_used = await self.usage.used_today(user_id, FEATURE_DEAL_ANALYZE)

        entitlements["limits"] = {
            FEATURE_CIM_ANALYZER: limit_snapshot(CIM_DAILY_LIMITS.get(plan, 0), cim_used, resets_at),
            FEATURE_DEAL_ANALYZE: limit_snapshot(
                # admins follow their stored plan here; enforcement treats them as unlimited
                deal_analyze_daily_limit(plan, False), deal_used, resets_at
            ),
        }

        return {
            "ok": True,
            "plan": plan,
            "isAdmin": is_admin,
            "user": {
                "userId": user_id,
                "email": access.email or email,
                "emailVerified": bool(access.email_verified),
            },
            "entitlements": entitlements,
        }

    async def get_deal_usage(self, user_id: str) -> Dict[str, Any]:
        """
        Build the ``GET /api/me/usage`` payload for the deal analyzer meter.

        Returns:
            ``{"enabled": False}`` for free users, otherwise today's count,
            limit (None = unlimited), remaining and percentage used
        """
        plan, is_admin = await self.plan_for(user_id)
        ent = get_entitlements(plan, is_admin)
        if not (ent["isPro"] or ent["isProPlus"] or ent["isAdmin"]):
            return {"enabled": False}

        unlimited = ent["isProPlus"] or ent["isAdmin"]
        daily_limit = None if unlimited else 3

        count = await self.usage.ensure_today(user_id, FEATURE_DEAL_ANALYZE)
        if daily_limit is None:
            return {"enabled": True, "countToday": count, "dailyLimit": None, "remaining": None, "pctUsed": 0}

        return {
            "enabled": True,
            "countToday": count,
            "dailyLimit": daily_limit,
            "remaining": max(0, daily_limit - count),
            "pctUsed": min(100, round(count / daily_limit * 100)),
        }
