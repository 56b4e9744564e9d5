"""FlowForge Billing Models

Two paid plans (Pro, Enterprise), each billed monthly or yearly through
Stripe Checkout. Price IDs come from the environment.
"""

from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from enum import Enum


class PaidPlan(str, Enum):
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Amounts in cents (USD)
PLAN_AMOUNTS = {
    PaidPlan.PRO.value: {BillingInterval.MONTHLY.value: 1900, BillingInterval.YEARLY.value: 19000},
    PaidPlan.ENTERPRISE.value: {BillingInterval.MONTHLY.value: 14900, BillingInterval.YEARLY.value: 149000},
}

STRIPE_INTERVALS = {BillingInterval.MONTHLY.value: "month", BillingInterval.YEARLY.value: "year"}


class PlanPrice(BaseModel):
    price_id: str
    amount: int  # cents
    currency: str = "usd"
    interval: str


class PlanPricing(BaseModel):
    monthly: PlanPrice
    yearly: PlanPrice


class PlanDetails(BaseModel):
    """Plan details for display on the pricing page"""
    plan: PaidPlan
    name: str
    description: str
    features: List[str]
    yearly_savings_percent: int = 20


PLAN_DETAILS = {
    PaidPlan.PRO: PlanDetails(
        plan=PaidPlan.PRO,
        name="Pro",
        description="Perfect for individuals and small teams",
        features=[
            "Unlimited workflows",
            "All platforms supported",
            "Priority support",
            "Advanced templates",
            "Team collaboration",
        ],
    ),
    PaidPlan.ENTERPRISE: PlanDetails(
        plan=PaidPlan.ENTERPRISE,
        name="Enterprise",
        description="Advanced features for large organizations",
        features=[
            "Everything in Pro",
            "SSO integration",
            "Audit logs",
            "Custom integrations",
            "Dedicated support",
            "On-premise deployment",
            "White-label options",
        ],
    ),
}


class CheckoutSessionRequest(BaseModel):
    """Body of POST /api/payment/create-checkout-session"""
    plan: str
    interval: str
    user_id: str = Field(min_length=1)
    user_email: EmailStr
    discount_percent: Optional[float] = Field(default=None, ge=0, le=100)

    @field_validator("plan")
    @classmethod
    def check_plan(cls, v: str) -> str:
        if v not in {p.value for p in PaidPlan}:
            raise ValueError("Plan must be 'pro' or 'enterprise'")
        return v

    @field_validator("interval")
    @classmethod
    def check_interval(cls, v: str) -> str:
        if v not in {i.value for i in BillingInterval}:
            raise ValueError("Interval must be 'monthly' or 'yearly'")
        return v


class CheckoutSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    url: str


class PortalSessionRequest(BaseModel):
    customer_id: str = Field(min_length=1)


class CancelSubscriptionRequest(BaseModel):
    subscription_id: Optional[str] = None
    immediately: bool = False


class SubscriptionStatus(BaseModel):
    status: str
    plan: str
    current_period_end: str
    cancel_at_period_end: bool
