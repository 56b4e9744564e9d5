"""FlowForge Stripe Service - subscriptions, portal and webhooks.

This service handles:
- Checkout sessions for Pro / Enterprise (monthly or yearly), with optional discount coupon
- Billing portal access
- Webhook processing with idempotency (stripe_events collection)
- Subscription status, cancellation and payment history

Key Principles:
- Plan is derived from the subscription price_id
- Checkout metadata carries user_id for webhook tracing
- Webhook handlers apply plan changes through the usage service
"""
import json
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from flowforge.models.billing import (
    PaidPlan,
    BillingInterval,
    PLAN_AMOUNTS,
    STRIPE_INTERVALS,
    PlanPrice,
    PlanPricing,
)
from flowforge.models.analytics import FunnelStep
from flowforge.models.user import PAID_PLANS
from flowforge.services.usage_service import usage_service
from flowforge.services.analytics_service import analytics_service

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

ACTIVE_STATUSES = {"active", "trialing"}

# A PROCESSING claim older than this may be taken over by a redelivery
STALE_PROCESSING_MINUTES = 10


class WebhookError(Exception):
    """Webhook could not be verified or processed."""
    pass


def get_price_ids() -> Dict[str, str]:
    return {
        "pro_monthly": os.getenv("STRIPE_PRICE_PRO_MONTHLY", "price_1234567890_pro_monthly"),
        "pro_yearly": os.getenv("STRIPE_PRICE_PRO_YEARLY", "price_1234567890_pro_yearly"),
        "enterprise_monthly": os.getenv("STRIPE_PRICE_ENTERPRISE_MONTHLY", "price_1234567890_enterprise_monthly"),
        "enterprise_yearly": os.getenv("STRIPE_PRICE_ENTERPRISE_YEARLY", "price_1234567890_enterprise_yearly"),
    }


def _to_iso(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class StripeService:
    """Stripe billing operations service."""

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    # =========================================================================
    # Pricing
    # =========================================================================

    def get_price_id(self, plan: str, interval: str) -> str:
        plan = PaidPlan(plan).value
        interval = BillingInterval(interval).value
        return get_price_ids()[f"{plan}_{interval}"]

    def get_pricing_plans(self) -> Dict[str, PlanPricing]:
        price_ids = get_price_ids()
        plans = {}
        for plan, amounts in PLAN_AMOUNTS.items():
            plans[plan] = PlanPricing(**{
                interval: PlanPrice(
                    price_id=price_ids[f"{plan}_{interval}"],
                    amount=amount,
                    currency="usd",
                    interval=STRIPE_INTERVALS[interval],
                )
                for interval, amount in amounts.items()
            })
        return plans

    def get_plan_from_price_id(self, price_id: Optional[str]) -> str:
        if not price_id:
            return "free"
        for key, configured in get_price_ids().items():
            if price_id == configured:
                return key.split("_")[0]
        if "pro" in price_id:
            return "pro"
        if "enterprise" in price_id:
            return "enterprise"
        return "free"

    # =========================================================================
    # Checkout & Portal
    # =========================================================================

    async def create_checkout_session(
        self,
        price_id: str,
        user_id: str,
        user_email: str,
        success_url: str,
        cancel_url: str,
        discount_percent: Optional[float] = None,
    ) -> Dict[str, str]:
        """
        Create a subscription checkout session.

        Returns:
            Dict with session_id and url
        """
        if not (stripe.api_key or "").strip():
            raise ValueError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set. Configure env and restart.")

        plan = self.get_plan_from_price_id(price_id)
        metadata = {"user_id": user_id, "plan": plan}

        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "customer_email": user_email,
            "client_reference_id": user_id,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
            "billing_address_collection": "auto",
            "automatic_tax": {"enabled": True},
        }

        try:
            if discount_percent and discount_percent > 0:
                coupon = stripe.Coupon.create(
                    percent_off=discount_percent,
                    duration="once",
                    name=f"{discount_percent:g}% off FlowForge AI",
                )
                # Stripe rejects allow_promotion_codes together with discounts
                params["discounts"] = [{"coupon": coupon.id}]
            else:
                params["allow_promotion_codes"] = True

            session = stripe.checkout.Session.create(**params)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe checkout session creation failed for user {user_id}: {e}")
            raise ValueError(f"Failed to create checkout session: {str(e)}")

        if not session.get("id") or not session.get("url"):
            raise ValueError("Failed to create checkout session")

        logger.info(f"Checkout session created: session_id={session.id} user_id={user_id} plan={plan}")
        return {"session_id": session.id, "url": session.url}

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, str]:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.error.StripeError as e:
            logger.error(f"Stripe portal session creation failed for {customer_id}: {e}")
            raise ValueError(f"Failed to create portal session: {str(e)}")
        return {"url": session.url}

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify, record and dispatch a webhook event.

        Raises WebhookError when the secret is missing, the signature is
        invalid or a handler fails. Already-processed events are a no-op.
        """
        webhook_secret = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
        if not webhook_secret:
            raise WebhookError("Stripe webhook secret not configured")

        try:
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.error.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            raise WebhookError("Invalid webhook signature")
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            raise WebhookError("Invalid webhook payload")

        event = json.loads(payload)
        event_id = event.get("id")
        event_type = event.get("type")
        logger.info(f"Stripe webhook received: event_id={event_id} event_type={event_type}")

        db = self._get_db()
        now = datetime.now(timezone.utc)
        stale_before = (now - timedelta(minutes=STALE_PROCESSING_MINUTES)).isoformat()
        # Claim: new, FAILED, or a PROCESSING record left behind by a crashed delivery
        try:
            await db.stripe_events.update_one(
                {
                    "event_id": event_id,
                    "$or": [
                        {"status": {"$nin": ["PROCESSED", "PROCESSING"]}},
                        {"status": "PROCESSING", "claimed_at": {"$lt": stale_before}},
                    ],
                },
                {
                    "$set": {
                        "type": event_type,
                        "status": "PROCESSING",
                        "claimed_at": now.isoformat(),
                        "processed_at": None,
                        "error": None,
                    },
                    "$setOnInsert": {"created": now.isoformat()},
                },
                upsert=True,
            )
        except DuplicateKeyError:
            logger.info(f"Event {event_id} already processed or in progress - skipping")
            return {"event_id": event_id, "duplicate": True}

        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(f"Webhook processing failed: event_id={event_id} event_type={event_type} error={e}")
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": "FAILED",
                    "processed_at": datetime.now(timezone.utc).isoformat(),
                    "error": str(e),
                }}
            )
            raise WebhookError(f"Failed to process event {event_id}: {e}")

        await db.stripe_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": "PROCESSED",
                "processed_at": datetime.now(timezone.utc).isoformat(),
                "related_user_id": result.get("user_id"),
            }}
        )
        logger.info(f"Webhook processed: event_id={event_id} event_type={event_type} user_id={result.get('user_id')}")
        return {"event_id": event_id, **result}

    async def _handle_event(self, event: Dict) -> Dict:
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {}) or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data)

        logger.info(f"Unhandled webhook event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _find_user_id(self, obj: Dict) -> Optional[str]:
        metadata = obj.get("metadata") or {}
        user_id = metadata.get("user_id")
        if user_id:
            return user_id
        customer_id = obj.get("customer")
        if not customer_id:
            return None
        user = await self._get_db().users.find_one(
            {"stripe_customer_id": customer_id}, {"_id": 0, "uid": 1}
        )
        return user["uid"] if user else None

    async def _handle_checkout_completed(self, session: Dict) -> Dict:
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        customer_id = session.get("customer")
        subscription_id = session.get("subscription")

        if not user_id:
            logger.error(f"No user ID found in checkout session {session.get('id')}")
            return {"handled": False, "reason": "missing_user_id"}

        plan = (session.get("metadata") or {}).get("plan")
        if plan not in PAID_PLANS:
            plan = PaidPlan.PRO.value

        db = self._get_db()
        await db.users.update_one(
            {"uid": user_id},
            {"$set": {
                "stripe_customer_id": customer_id,
                "stripe_subscription_id": subscription_id,
                "cancel_at_period_end": False,
                "payment_failed_at": None,
            }}
        )
        await usage_service.update_plan_usage(user_id, plan)
        converted = await usage_service.mark_conversions(user_id)

        amount = (session.get("amount_total") or 0) / 100
        await analytics_service.track_conversion_step(user_id, FunnelStep.CONVERTED, {"plan": plan, "value": amount})
        await analytics_service.track_subscription(
            user_id, "started", plan, interval="", amount=amount, currency=session.get("currency") or "usd"
        )

        logger.info(f"Checkout completed for user {user_id}, customer {customer_id}, plan {plan}")
        return {"user_id": user_id, "plan": plan, "conversions_marked": converted}

    async def _handle_subscription_change(self, subscription: Dict) -> Dict:
        user_id = await self._find_user_id(subscription)
        if not user_id:
            logger.warning(f"Subscription {subscription.get('id')} has no matching user")
            return {"handled": False, "reason": "user_not_found"}

        items = (subscription.get("items") or {}).get("data") or []
        price = items[0].get("price") if items else None
        price_id = price.get("id") if isinstance(price, dict) else price
        plan = self.get_plan_from_price_id(price_id)
        status = subscription.get("status")
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        db = self._get_db()
        await db.users.update_one(
            {"uid": user_id},
            {"$set": {
                "stripe_customer_id": subscription.get("customer"),
                "stripe_subscription_id": subscription.get("id"),
                "cancel_at_period_end": cancel_at_period_end,
            }}
        )

        applied = False
        if status in ACTIVE_STATUSES and plan in PAID_PLANS:
            await usage_service.update_plan_usage(user_id, plan)
            applied = True

        if cancel_at_period_end:
            logger.info(f"Subscription will cancel at period end for user {user_id}")

        logger.info(f"Subscription {subscription.get('id')} status={status} plan={plan} user={user_id}")
        return {"user_id": user_id, "plan": plan, "status": status, "plan_applied": applied}

    async def _handle_subscription_deleted(self, subscription: Dict) -> Dict:
        user_id = await self._find_user_id(subscription)
        if not user_id:
            logger.warning(f"Deleted subscription {subscription.get('id')} has no matching user")
            return {"handled": False, "reason": "user_not_found"}

        db = self._get_db()
        await db.users.update_one(
            {"uid": user_id},
            {"$set": {"stripe_subscription_id": None, "cancel_at_period_end": False}}
        )
        await usage_service.update_plan_usage(user_id, "free")

        items = (subscription.get("items") or {}).get("data") or []
        price = items[0].get("price") if items else None
        previous_plan = self.get_plan_from_price_id(price.get("id") if isinstance(price, dict) else price)
        await analytics_service.track_subscription(user_id, "cancelled", previous_plan, interval="", amount=0)

        logger.info(f"Subscription deleted for user {user_id} - downgraded to free")
        return {"user_id": user_id, "plan": "free"}

    async def _handle_payment_succeeded(self, invoice: Dict) -> Dict:
        customer_id = invoice.get("customer")
        amount = (invoice.get("amount_paid") or 0) / 100
        user_id = await self._find_user_id(invoice)

        await analytics_service.track_business_metric(
            "revenue",
            amount,
            {
                "customer_id": customer_id or "",
                "billing_reason": invoice.get("billing_reason") or "",
                "currency": invoice.get("currency") or "usd",
            },
        )
        if user_id:
            await self._get_db().users.update_one(
                {"uid": user_id},
                {"$set": {"payment_failed_at": None, "last_payment_at": datetime.now(timezone.utc).isoformat()}}
            )

        logger.info(f"Payment succeeded for customer {customer_id}: {amount}")
        return {"user_id": user_id, "amount": amount}

    async def _handle_payment_failed(self, invoice: Dict) -> Dict:
        customer_id = invoice.get("customer")
        user_id = await self._find_user_id(invoice)
        if user_id:
            await self._get_db().users.update_one(
                {"uid": user_id},
                {"$set": {"payment_failed_at": datetime.now(timezone.utc).isoformat()}}
            )
        logger.warning(f"Payment failed for customer {customer_id}")
        return {"user_id": user_id, "payment_failed": True}

    # =========================================================================
    # Subscription management
    # =========================================================================

    async def get_subscription_status(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=1)
            data = subscriptions.get("data") or []
            if not data:
                return None

            subscription = data[0]
            items = (subscription.get("items") or {}).get("data") or []
            item = items[0] if items else {}
            price = item.get("price") if item else None
            price_id = price.get("id") if price else None
            period_end = subscription.get("current_period_end") or (item.get("current_period_end") if item else None)

            return {
                "status": subscription.get("status"),
                "plan": self.get_plan_from_price_id(price_id),
                "current_period_end": _to_iso(period_end),
                "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            }
        except Exception as e:
            logger.error(f"Failed to get subscription status for {customer_id}: {e}")
            return None

    async def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> Dict[str, Any]:
        try:
            if immediately:
                subscription = stripe.Subscription.delete(subscription_id)
            else:
                subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.error.StripeError as e:
            logger.error(f"Failed to cancel subscription {subscription_id}: {e}")
            raise ValueError("Failed to cancel subscription")

        await self._get_db().users.update_one(
            {"stripe_subscription_id": subscription_id},
            {"$set": {"cancel_at_period_end": not immediately}}
        )
        logger.info(f"Subscription cancellation requested: {subscription_id}, immediate={immediately}")
        return {
            "subscription_id": subscription_id,
            "status": subscription.get("status"),
            "cancel_at_period_end": not immediately,
        }

    async def get_payment_history(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            invoices = stripe.Invoice.list(
                customer=customer_id,
                status="paid",
                limit=min(limit, 100),
            )
        except stripe.error.StripeError as e:
            logger.error(f"Stripe invoice list error for {customer_id}: {e}")
            raise ValueError("Failed to get payment history")

        history = []
        for inv in invoices.get("data") or []:
            lines = (inv.get("lines") or {}).get("data") or []
            description = lines[0].get("description") if lines else None
            history.append({
                "id": inv.get("id"),
                "amount": (inv.get("amount_paid") or 0) / 100,
                "currency": (inv.get("currency") or "usd").lower(),
                "status": inv.get("status"),
                "date": _to_iso(inv.get("created")),
                "description": description or "FlowForge AI subscription",
                "invoice_url": inv.get("hosted_invoice_url"),
                "invoice_pdf": inv.get("invoice_pdf"),
            })
        return history


# Singleton instance
stripe_service = StripeService()
