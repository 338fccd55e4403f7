"""
Billing Service - Stripe subscriptions, trials and plan sync
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings, PLAN_FREE, PLAN_PRO, PLAN_PRO_PLUS
from crud.user_access import UserAccessRepository
from database_models import UserAccess
from utils.shared_utils import app_link, from_unix

logger = logging.getLogger(__name__)

# Initialize Stripe client
if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

ENDED_STATUSES = ("canceled", "unpaid", "incomplete_expired")
PRESERVED_STATUSES = ("trialing", "active", "past_due")
CANCELLABLE_STATUSES = ("active", "trialing", "past_due", "unpaid")
SUBSCRIPTION_EXPAND = ["items.data.price"]


class BillingError(Exception):
    """Billing request that cannot be fulfilled; carries the HTTP status to answer with."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, name, default)
    return default if value is None else value


def _id_of(obj: Any) -> Optional[str]:
    # Expandable fields are either an ID string or the expanded object
    if obj is None or isinstance(obj, str):
        return obj
    return _field(obj, "id")


def _first_item(sub: Any) -> Any:
    data = _field(_field(sub, "items"), "data") or []
    return data[0] if len(data) else None


def price_id_of(sub: Any) -> Optional[str]:
    return _id_of(_field(_first_item(sub), "price"))


def current_period_end_of(sub: Any) -> Optional[int]:
    # Newer API versions report the period on the subscription item
    return _field(sub, "current_period_end") or _field(_first_item(sub), "current_period_end")


def plan_from_price_id(price_id: Optional[str]) -> str:
    """Map a Stripe price to an app plan; unknown prices grant nothing."""
    if not price_id:
        return PLAN_FREE
    if price_id == settings.stripe_price_pro:
        return PLAN_PRO
    if price_id == settings.stripe_price_pro_plus:
        return PLAN_PRO_PLUS
    return PLAN_FREE


def effective_app_plan(sub: Any, price_id: Optional[str]) -> str:
    """
    Plan the app should grant for a subscription.

    A scheduled cancellation drops access immediately, as do ended statuses.
    """
    if _field(sub, "cancel_at_period_end"):
        return PLAN_FREE
    if _field(sub, "status") in ENDED_STATUSES:
        return PLAN_FREE
    return plan_from_price_id(price_id)


def effective_app_status(sub: Any) -> str:
    if _field(sub, "cancel_at_period_end"):
        return "canceled"
    status = _field(sub, "status")
    if status in PRESERVED_STATUSES:
        return status
    if status in ENDED_STATUSES:
        return "canceled"
    return "none"


def subscription_has_trial(sub: Any) -> bool:
    trial_start = _field(sub, "trial_start")
    trial_end = _field(sub, "trial_end")
    return _field(sub, "status") == "trialing" or (
        trial_start is not None and trial_end is not None and trial_end > trial_start
    )


def price_id_for_plan(plan: str) -> Optional[str]:
    if plan == PLAN_PRO:
        return settings.stripe_price_pro
    if plan == PLAN_PRO_PLUS:
        return settings.stripe_price_pro_plus
    return None


class BillingService:
    """
    Service class for handling billing-related business logic.
    The UserAccess row is the app's copy of Stripe subscription state.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db
        self.repo = UserAccessRepository(db)

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def ensure_customer(self, access: UserAccess, reuse_by_email: bool = False) -> str:
        """
        Return the row's Stripe customer, creating one when missing.

        Args:
            access: UserAccess row
            reuse_by_email: Look up an existing customer by email first

        Returns:
            Stripe customer ID (stored on the row)
        """
        if access.stripe_customer_id:
            return access.stripe_customer_id

        customer_id = None
        if reuse_by_email and access.email:
            existing = stripe.Customer.list(email=access.email, limit=1)
            data = _field(existing, "data") or []
            if len(data):
                customer_id = _id_of(data[0])

        if not customer_id:
            params: Dict[str, Any] = {"metadata": {"userId": access.user_id}}
            if reuse_by_email and access.email:
                params["email"] = access.email
            customer_id = _id_of(stripe.Customer.create(**params))

        await self.repo.update(access, {"stripe_customer_id": customer_id})
        logger.info(f"Linked Stripe customer {customer_id} to user {access.user_id}")
        return customer_id

    async def create_checkout_session(self, user_id: str, plan: str) -> str:
        """
        Create a subscription Checkout session for a paid plan.

        The free trial is offered only to users who never had one.

        Args:
            user_id: External user ID
            plan: "pro" or "pro_plus"

        Returns:
            Checkout URL to redirect the browser to

        Raises:
            BillingError: If the plan's price is not configured
        """
        price_id = price_id_for_plan(plan)
        if not price_id:
            logger.error(f"No Stripe price configured for plan '{plan}'")
            raise BillingError(f"Stripe price for plan '{plan}' is not configured", status_code=500)

        access = await self.repo.upsert(user_id, {})
        customer_id = await self.ensure_customer(access)

        subscription_data: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if not access.has_used_trial:
            subscription_data["trial_period_days"] = settings.trial_period_days

        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            payment_method_collection="always",
            subscription_data=subscription_data,
            metadata={"userId": user_id},
            success_url=app_link("/billing/success"),
            cancel_url=app_link("/pricing"),
        )
        logger.info(f"Created checkout session for user {user_id} plan={plan} trial={not access.has_used_trial}")
        return _field(session, "url")

    async def create_account_portal_session(self, user_id: str) -> str:
        """
        Billing portal for the account page; links a customer if needed.

        Raises:
            BillingError: If the user has no access row yet
        """
        access = await self.repo.get_by_user_id(user_id)
        if access is None:
            raise BillingError("UserAccess missing", status_code=400)

        customer_id = await self.ensure_customer(access, reuse_by_email=True)
        portal = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=app_link("/account"),
        )
        return _field(portal, "url")

    async def create_billing_portal_url(self, user_id: str) -> Optional[str]:
        """
        Billing portal for subscribers only.

        Returns:
            Portal URL, or None when the user has no Stripe customer
        """
        access = await self.repo.get_by_user_id(user_id)
        if not access or not access.stripe_customer_id:
            return None
        portal = stripe.billing_portal.Session.create(
            customer=access.stripe_customer_id,
            return_url=app_link("/billing"),
        )
        return _field(portal, "url")

    # ------------------------------------------------------------------
    # Cancel and post-checkout sync
    # ------------------------------------------------------------------

    async def cancel_subscription(self, user_id: str) -> Dict[str, Any]:
        """
        Cancel the user's subscription in Stripe (best effort) and always
        downgrade the local row.

        The stored subscription is tried first; failing that, the first
        active-like subscription of the customer is cancelled. The trial
        is marked as used either way.

        Returns:
            Dict with ``cancelledInStripe``, ``attemptedSubId`` and
            ``stripeError`` describing the Stripe side
        """
        access = await self.repo.get_by_user_id(user_id)
        attempted_sub_id = access.stripe_subscription_id if access else None
        cancelled = False
        stripe_error = None

        try:
            if access and access.stripe_customer_id:
                if attempted_sub_id:
                    try:
                        stripe.Subscription.cancel(attempted_sub_id)
                        cancelled = True
                    except stripe.StripeError as e:
                        stripe_error = str(e) or "Stripe cancel failed for stored subId"

                if not cancelled:
                    subs = stripe.Subscription.list(customer=access.stripe_customer_id, status="all", limit=10)
                    active_like = next(
                        (s for s in (_field(subs, "data") or []) if _field(s, "status") in CANCELLABLE_STATUSES),
                        None,
                    )
                    if active_like is not None and _id_of(active_like):
                        attempted_sub_id = _id_of(active_like)
                        try:
                            stripe.Subscription.cancel(attempted_sub_id)
                            cancelled = True
                            stripe_error = None
                        except stripe.StripeError as e:
                            stripe_error = str(e) or "Stripe cancel failed for listed subId"
        except stripe.StripeError as e:
            stripe_error = str(e) or "Stripe error"

        if stripe_error:
            logger.warning(f"Stripe cancel for user {user_id} incomplete: {stripe_error}")

        await self.repo.upsert(
            user_id,
            {
                "plan": PLAN_FREE,
                "subscription_status": "canceled",
                "has_used_trial": True,
                "trial_started_at": None,
                "trial_ends_at": None,
                "stripe_subscription_id": None,
                "stripe_price_id": None,
                "current_period_end": None,
            },
            create_fields={
                "plan": PLAN_FREE,
                "subscription_status": "canceled",
                "has_used_trial": True,
                "stripe_customer_id": access.stripe_customer_id if access else None,
            },
        )

        return {
            "ok": True,
            "downgraded": True,
            "cancelledInStripe": cancelled,
            "attemptedSubId": attempted_sub_id,
            "stripeError": stripe_error,
        }

    async def sync_checkout_session(self, user_id: str, session_id: str) -> None:
        """
        Copy a completed Checkout session's subscription onto the user's row.

        Raises:
            BillingError: If the session has no subscription or customer
        """
        session = stripe.checkout.Session.retrieve(session_id, expand=["subscription", "customer"])
        customer_id = _id_of(_field(session, "customer"))

        subscription = _field(session, "subscription")
        if not subscription:
            raise BillingError("No subscription on session", status_code=400)
        if isinstance(subscription, str):
            subscription = stripe.Subscription.retrieve(subscription)
        if not customer_id:
            raise BillingError("No customer on session", status_code=400)

        price_id = price_id_of(subscription)
        plan = PLAN_PRO_PLUS if price_id and price_id == settings.stripe_price_pro_plus else PLAN_PRO

        fields = {
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": _id_of(subscription),
            "stripe_price_id": price_id,
            "subscription_status": _field(subscription, "status") or "none",
            "current_period_end": from_unix(current_period_end_of(subscription)),
            "plan": plan,
        }
        await self.repo.upsert(user_id, fields)
        logger.info(f"Synced checkout session {session_id} for user {user_id}: plan={plan}")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def upsert_from_subscription(self, customer_id: str, sub: Any) -> Optional[UserAccess]:
        """
        Mirror a subscription onto the customer's access row.

        Trial dates are kept only while Stripe reports a trial, the period
        end is cleared on free, and ``has_used_trial`` never goes back to
        False once a trial was granted.

        Returns:
            Updated row, or None for customers the app does not know
        """
        access = await self.repo.get_by_customer_id(customer_id)
        if access is None:
            logger.info(f"Ignoring subscription for unknown customer {customer_id}")
            return None

        price_id = price_id_of(sub)
        plan = effective_app_plan(sub, price_id)
        has_trial = subscription_has_trial(sub)

        fields = {
            "stripe_subscription_id": _id_of(sub),
            "stripe_price_id": price_id,
            "subscription_status": effective_app_status(sub),
            "plan": plan,
            "trial_started_at": from_unix(_field(sub, "trial_start")) if has_trial else None,
            "trial_ends_at": from_unix(_field(sub, "trial_end")) if has_trial else None,
            "current_period_end": None if plan == PLAN_FREE else from_unix(current_period_end_of(sub)),
            "has_used_trial": bool(access.has_used_trial or has_trial),
        }
        return await self.repo.update(access, fields)

    async def process_webhook(self, event: Any) -> None:
        """
        Apply a verified Stripe webhook event.

        Args:
            event: Verified Stripe Event (from webhook signature verification)

        Raises:
            stripe.StripeError: If a follow-up Stripe lookup fails
        """
        event_type = _field(event, "type")
        obj = _field(_field(event, "data"), "object")
        logger.info(f"Processing Stripe webhook event: {event_type}")

        if event_type == "checkout.session.completed":
            customer_id = _id_of(_field(obj, "customer"))
            subscription_id = _id_of(_field(obj, "subscription"))
            if not customer_id or not subscription_id:
                return
            sub = stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)
            await self.upsert_from_subscription(customer_id, sub)

        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            customer_id = _id_of(_field(obj, "customer"))
            if not customer_id:
                return
            sub = stripe.Subscription.retrieve(_id_of(obj), expand=SUBSCRIPTION_EXPAND)
            await self.upsert_from_subscription(customer_id, sub)

        elif event_type == "customer.subscription.deleted":
            customer_id = _id_of(_field(obj, "customer"))
            access = await self.repo.get_by_customer_id(customer_id) if customer_id else None
            if access is None:
                return
            # has_used_trial is deliberately left untouched
            await self.repo.update(access, {
                "subscription_status": "canceled",
                "plan": PLAN_FREE,
                "trial_started_at": None,
                "trial_ends_at": None,
                "stripe_price_id": None,
                "stripe_subscription_id": None,
                "current_period_end": None,
            })

        elif event_type == "invoice.payment_succeeded":
            customer_id = _id_of(_field(obj, "customer"))
            subscription_id = _id_of(_field(obj, "subscription"))
            if not customer_id or not subscription_id:
                return
            access = await self.repo.get_by_customer_id(customer_id)
            if access is None:
                return
            sub = stripe.Subscription.retrieve(subscription_id, expand=SUBSCRIPTION_EXPAND)
            price_id = price_id_of(sub)
            await self.repo.update(access, {
                "has_used_trial": True,
                "plan": effective_app_plan(sub, price_id),
                "subscription_status": effective_app_status(sub),
                "stripe_subscription_id": _id_of(sub),
                "stripe_price_id": price_id,
            })

        elif event_type == "invoice.payment_failed":
            customer_id = _id_of(_field(obj, "customer"))
            if not customer_id:
                return
            count = await self.repo.update_many_by_customer(customer_id, {
                "subscription_status": "past_due",
                "updated_at": datetime.now(timezone.utc),
            })
            logger.info(f"Marked {count} access row(s) past_due for customer {customer_id}")

        else:
            logger.debug(f"Ignoring Stripe event type {event_type}")
