"""FlowForge Payment Routes

Endpoints:
- POST /api/payment/create-checkout-session - Start a Pro/Enterprise subscription
- POST /api/payment/create-portal-session - Stripe billing portal
- POST /api/payment/webhook - Stripe webhook receiver (raw body)
- GET /api/payment/pricing - Plan display data (public)
- GET /api/payment/subscription/{customer_id} - Active subscription status
- POST /api/payment/cancel-subscription - Cancel now or at period end
- GET /api/payment/history/{customer_id} - Paid invoices
"""

from fastapi import APIRouter, HTTPException, Depends, Request, Query
from fastapi.responses import JSONResponse
import logging
import os

from flowforge.models.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PortalSessionRequest,
    CancelSubscriptionRequest,
    PLAN_DETAILS,
)
from flowforge.services.stripe_service import stripe_service, WebhookError
from flowforge.services.usage_service import usage_service
from middleware import require_auth
from auth import is_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["Payment"])


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:8080").rstrip("/")


def _is_development() -> bool:
    return os.getenv("ENVIRONMENT", "production") == "development"


def _ensure_customer_access(user: dict, customer_id: str) -> None:
    if not is_admin(user) and user.get("stripe_customer_id") != customer_id:
        raise HTTPException(status_code=403, detail="Insufficient permissions")


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(data: CheckoutSessionRequest, user: dict = Depends(require_auth)):
    if data.user_id != user["uid"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    # Only the offer the server would show the caller can be redeemed
    discount = data.discount_percent or 0
    if discount:
        offer = usage_service.get_offer_for_user(user)
        if discount != offer.discount:
            logger.warning(
                f"Checkout discount rejected: user={user['uid']} requested={discount} offered={offer.discount}"
            )
            raise HTTPException(status_code=400, detail="Discount does not match the current upgrade offer")

    try:
        price_id = stripe_service.get_price_id(data.plan, data.interval)
        session = await stripe_service.create_checkout_session(
            price_id=price_id,
            user_id=data.user_id,
            user_email=data.user_email,
            success_url=f"{_frontend_url()}/dashboard?payment=success",
            cancel_url=f"{_frontend_url()}/dashboard?payment=cancelled",
            discount_percent=discount or None,
        )
        return CheckoutSessionResponse(session_id=session["session_id"], url=session["url"])
    except Exception as e:
        logger.error(f"Create checkout session error: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Failed to create checkout session",
                "message": str(e) if _is_development() else "Please try again later",
            },
        )


@router.post("/create-portal-session")
async def create_portal_session(data: PortalSessionRequest, user: dict = Depends(require_auth)):
    _ensure_customer_access(user, data.customer_id)
    try:
        session = await stripe_service.create_portal_session(
            data.customer_id,
            return_url=f"{_frontend_url()}/dashboard",
        )
        return {"success": True, "url": session["url"]}
    except Exception as e:
        logger.error(f"Create portal session error: {e}")
        raise HTTPException(status_code=500, detail="Failed to create portal session")


@router.post("/webhook")
async def stripe_webhook(request: Request):
    """Stripe webhook receiver.

    Signature verified against STRIPE_WEBHOOK_SECRET; duplicate deliveries
    of an already processed event are acknowledged without side effects.
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Missing stripe signature"},
        )

    payload = await request.body()
    try:
        result = await stripe_service.handle_webhook(payload, signature)
    except WebhookError as e:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Webhook processing failed", "message": str(e)},
        )
    except Exception as e:
        logger.error(f"Stripe webhook error: {e}", exc_info=True)
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Webhook processing failed", "message": "Unknown error"},
        )

    return {"success": True, "message": "Webhook processed successfully", "event_id": result.get("event_id")}


@router.get("/pricing")
async def get_pricing():
    """Plan display data. No auth required."""
    pricing = stripe_service.get_pricing_plans()
    plans = {}
    for plan, details in PLAN_DETAILS.items():
        prices = pricing[plan.value]
        plans[plan.value] = {
            "name": details.name,
            "description": details.description,
            "features": details.features,
            "monthly": {
                "price": prices.monthly.amount / 100,
                "price_id": prices.monthly.price_id,
            },
            "yearly": {
                "price": prices.yearly.amount / 100,
                "price_id": prices.yearly.price_id,
                "savings": details.yearly_savings_percent,
            },
        }
    return {"success": True, "plans": plans}


@router.get("/subscription/{customer_id}")
async def get_subscription(customer_id: str, user: dict = Depends(require_auth)):
    _ensure_customer_access(user, customer_id)

    subscription = await stripe_service.get_subscription_status(customer_id)
    if not subscription:
        return {"success": True, "subscription": None, "message": "No active subscription found"}
    return {"success": True, "subscription": subscription}


@router.post("/cancel-subscription")
async def cancel_subscription(data: CancelSubscriptionRequest, user: dict = Depends(require_auth)):
    subscription_id = data.subscription_id or user.get("stripe_subscription_id")
    if not subscription_id:
        raise HTTPException(status_code=400, detail="Subscription ID is required")
    if subscription_id != user.get("stripe_subscription_id") and not is_admin(user):
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    try:
        await stripe_service.cancel_subscription(subscription_id, data.immediately)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "success": True,
        "message": (
            "Subscription cancelled immediately"
            if data.immediately
            else "Subscription will cancel at the end of the current period"
        ),
    }


@router.get("/history/{customer_id}")
async def payment_history(
    customer_id: str,
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(require_auth),
):
    _ensure_customer_access(user, customer_id)
    try:
        payments = await stripe_service.get_payment_history(customer_id, limit)
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "success": True,
        "payments": payments,
        "pagination": {"has_more": len(payments) >= limit},
    }
