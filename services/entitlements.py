"""
Entitlements - plan to feature mapping, trial checks and daily limits
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.settings import PLAN_FREE, PLAN_PRO, PLAN_PRO_PLUS, PLAN_STARTER
from utils.shared_utils import as_utc

FEATURE_CIM_ANALYZER = "cimAnalyzer"
FEATURE_DEAL_ANALYZE = "dealAnalyze"

CIM_DAILY_LIMITS = {PLAN_PRO_PLUS: 10, PLAN_PRO: 3}
DEAL_ANALYZE_PRO_DAILY_LIMIT = 3


def normalize_plan(plan: Optional[str]) -> str:
    return str(plan or PLAN_FREE)


def is_trial_active(trial_ends_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when a trial end date is set and still in the future."""
    if not trial_ends_at:
        return False
    now = now or datetime.now(timezone.utc)
    return as_utc(trial_ends_at) > now


def has_plan(plan: Optional[str], trial_ends_at: Optional[datetime], required: str) -> bool:
    """
    Legacy tier check kept for the starter plan.

    free is always satisfied; starter accepts starter, pro or an active
    trial; pro accepts only pro.
    """
    plan = normalize_plan(plan)
    if required == PLAN_FREE:
        return True
    if required == PLAN_STARTER:
        return plan in (PLAN_STARTER, PLAN_PRO) or is_trial_active(trial_ends_at)
    if required == PLAN_PRO:
        return plan == PLAN_PRO
    return False


def get_entitlements(plan: Optional[str], is_admin: bool = False) -> Dict[str, bool]:
    """
    Map a plan (and the admin flag) to feature switches.

    Args:
        plan: Stored plan string; unknown values behave like free
        is_admin: Admins get every feature

    Returns:
        Dict of camelCase feature flags as the web client reads them
    """
    plan = normalize_plan(plan)
    is_pro = plan == PLAN_PRO
    is_pro_plus = plan == PLAN_PRO_PLUS

    if is_admin:
        return {
            "canUseCimAnalyzer": True,
            "canUseDealCalculator": True,
            "canAnalyzeDeal": True,
            "canUse5YearProjection": True,
            "canSaveDeals": True,
            "isFree": False,
            "isPro": True,
            "isProPlus": True,
            "isAdmin": True,
        }

    paid = is_pro or is_pro_plus
    return {
        "canUseCimAnalyzer": paid,
        "canUseDealCalculator": paid,
        "canAnalyzeDeal": paid,
        "canUse5YearProjection": is_pro_plus,
        "canSaveDeals": paid,
        "isFree": not paid,
        "isPro": is_pro,
        "isProPlus": is_pro_plus,
        "isAdmin": False,
    }


def is_paid_or_admin(plan: Optional[str], is_admin: bool) -> bool:
    ent = get_entitlements(plan, is_admin)
    return ent["isPro"] or ent["isProPlus"] or ent["isAdmin"]


def cim_daily_limit(plan: Optional[str], is_admin: bool) -> Optional[int]:
    """Daily CIM analyses allowed; None means unlimited."""
    if is_admin:
        return None
    return CIM_DAILY_LIMITS.get(normalize_plan(plan), 0)


def deal_analyze_daily_limit(plan: Optional[str], is_admin: bool) -> Optional[int]:
    """Daily deal analyses allowed; None means unlimited."""
    plan = normalize_plan(plan)
    if is_admin or plan == PLAN_PRO_PLUS:
        return None
    if plan == PLAN_PRO:
        return DEAL_ANALYZE_PRO_DAILY_LIMIT
    return 0


def remaining(limit: Optional[int], used: int) -> Optional[int]:
    if limit is None:
        return None
    return max(0, limit - used)


def limit_snapshot(limit: Optional[int], used: int, resets_at: str) -> Dict[str, Any]:
    return {
        "dailyLimit": limit,
        "usedToday": used,
        "remaining": remaining(limit, used),
        "resetsAt": resets_at,
    }
