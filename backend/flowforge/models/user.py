"""FlowForge User Model

Single user document with the monthly usage map embedded.
Stored in the `users` collection keyed by `uid`.
"""

from pydantic import BaseModel, EmailStr, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

from flowforge.models.usage import UsageData, PLATFORMS, SECONDARY_PLATFORM_LIMIT


class Plan(str, Enum):
    """Subscription plans"""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


PAID_PLANS = {Plan.PRO.value, Plan.ENTERPRISE.value}


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


def default_usage() -> Dict[str, UsageData]:
    """Usage before onboarding: every platform gets the secondary quota."""
    return {
        platform: UsageData(used=0, limit=SECONDARY_PLATFORM_LIMIT, is_primary=False)
        for platform in PLATFORMS
    }


class UserProfile(BaseModel):
    """FlowForge user profile."""
    uid: str = Field(default_factory=lambda: f"FFU-{uuid.uuid4().hex[:12].upper()}")
    email: EmailStr
    display_name: str = ""
    password_hash: str

    role: UserRole = UserRole.USER
    plan: Plan = Plan.FREE
    primary_platform: Optional[str] = None

    usage: Dict[str, UsageData] = Field(default_factory=default_usage)

    # Stripe references
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False

    # ISO-8601 strings, as the dashboard reads them
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    last_used_at: Optional[str] = None
    last_reset_at: Optional[str] = None
    plan_updated_at: Optional[str] = None
    last_login_at: Optional[str] = None

    preferences: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class UserCreate(BaseModel):
    """Request model for user registration"""
    email: EmailStr
    display_name: str = ""
    password: str = Field(min_length=8)

    model_config = {"extra": "ignore"}


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class UserResponse(BaseModel):
    """Safe user response (no password hash)"""
    uid: str
    email: str
    display_name: str
    role: UserRole
    plan: Plan
    primary_platform: Optional[str] = None
    usage: Dict[str, UsageData]
    stripe_customer_id: Optional[str] = None
    cancel_at_period_end: bool = False
    created_at: str
    last_login_at: Optional[str] = None

    model_config = {"extra": "ignore"}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse
