"""
Billing Router - Stripe checkout, portal, cancel, sync and webhook endpoints
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser, get_optional_user
from config.settings import settings, PAID_PLANS
from database import get_db
from services.billing_service import BillingError, BillingService
from utils.responses import error_response, success_response
from utils.shared_utils import app_link, log_endpoint_event

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api", tags=["billing"])


def _bare_failure(status: int) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False})


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events with signature verification.

    Only verified events are processed. Signature problems answer 400 and
    processing failures answer 500 so Stripe retries the delivery.

    Args:
        request: FastAPI Request object (for raw body)
        db: Database session dependency

    Returns:
        ``{"received": true}`` once the event is applied or ignored
    """
    # Get raw request body (required for signature verification)
    payload = await request.body()

    stripe_signature = request.headers.get("stripe-signature")
    if not stripe_signature:
        logger.error("Missing Stripe-Signature header")
        return PlainTextResponse("Missing signature", status_code=400)

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret or ""
        )
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.error(f"Stripe webhook signature verification failed: {e}")
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)

    try:
        await BillingService(db).process_webhook(event)
    except (stripe.StripeError, SQLAlchemyError, KeyError, TypeError) as e:
        logger.error(f"Webhook handler failed: {e}", exc_info=True)
        return PlainTextResponse("Webhook failed", status_code=500)

    return {"received": True}


@billing_router.get("/stripe/checkout")
async def stripe_checkout(
    plan: Optional[str] = Query(None),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a subscription Checkout for ``plan`` (pro or pro_plus) and
    redirect the browser to Stripe.
    """
    if not user:
        return RedirectResponse(app_link("/login?redirect_url=/pricing"), status_code=303)
    if plan not in PAID_PLANS:
        return RedirectResponse(app_link("/pricing"), status_code=303)

    try:
        url = await BillingService(db).create_checkout_session(user.user_id, plan)
    except BillingError as e:
        return error_response(e.message, status=e.status_code, ok=None)

    log_endpoint_event("/api/stripe/checkout", user.user_id, "success", {"plan": plan})
    return RedirectResponse(url, status_code=303)


@billing_router.post("/stripe/portal")
async def stripe_portal(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Billing portal URL for the account page, creating the Stripe customer if needed."""
    if not user:
        return error_response("Unauthorized", status=401, ok=None)

    try:
        url = await BillingService(db).create_account_portal_session(user.user_id)
    except BillingError as e:
        return error_response(e.message, status=e.status_code, ok=None)

    return {"url": url}


@billing_router.get("/billing-portal")
async def billing_portal_redirect(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    if not user:
        return RedirectResponse(app_link("/login"), status_code=307)
    url = await BillingService(db).create_billing_portal_url(user.user_id)
    return RedirectResponse(url or app_link("/pricing"), status_code=307)


@billing_router.post("/billing-portal")
async def billing_portal(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Billing portal URL for subscribers; others are sent to pricing."""
    if not user:
        return error_response("UNAUTHORIZED", status=401)
    url = await BillingService(db).create_billing_portal_url(user.user_id)
    if not url:
        return error_response("NO_SUBSCRIPTION", status=403, redirectTo="/pricing")
    return success_response({"url": url})


@billing_router.post("/stripe/cancel")
async def stripe_cancel(
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel the subscription in Stripe (best effort) and downgrade locally.

    The local downgrade always happens, even when Stripe rejects the cancel.
    """
    if not user:
        return error_response("Not authenticated", status=401)

    result = await BillingService(db).cancel_subscription(user.user_id)
    log_endpoint_event(
        "/api/stripe/cancel",
        user.user_id,
        "success" if result["cancelledInStripe"] else "partial",
        {"attemptedSubId": result["attemptedSubId"]},
    )
    return result


@billing_router.post("/stripe/sync")
async def stripe_sync(
    body: Optional[Dict[str, Any]] = Body(None),
    user: Optional[CurrentUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db)
):
    """Apply a finished Checkout session to the user's plan without waiting for the webhook."""
    if not user:
        return _bare_failure(401)

    session_id = (body or {}).get("session_id")
    if not session_id:
        return _bare_failure(400)

    try:
        await BillingService(db).sync_checkout_session(user.user_id, str(session_id))
    except BillingError as e:
        return error_response(e.message, status=e.status_code)

    return {"ok": True}
