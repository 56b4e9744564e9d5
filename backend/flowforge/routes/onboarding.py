"""FlowForge Onboarding Routes

Endpoints:
- POST /api/onboarding/complete - Pick the primary platform and set free-tier limits
- GET /api/onboarding/status - Whether onboarding is done
"""

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, field_validator
from datetime import datetime, timezone
import logging

from database import database
from flowforge.models.usage import PLATFORMS, DEFAULT_PRIMARY_PLATFORM
from flowforge.models.analytics import FunnelStep
from flowforge.services.usage_service import usage_service
from flowforge.services.analytics_service import analytics_service
from middleware import require_auth

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/onboarding", tags=["Onboarding"])

EXPLORING = "exploring"


class OnboardingRequest(BaseModel):
    platform: str

    @field_validator("platform")
    @classmethod
    def check_platform(cls, v: str) -> str:
        if v != EXPLORING and v not in PLATFORMS:
            raise ValueError("Platform must be one of: n8n, zapier, make, power_automate, exploring")
        return v


@router.post("/complete")
async def complete_onboarding(data: OnboardingRequest, user: dict = Depends(require_auth)):
    """Store the primary platform and the matching usage limits.

    Users still exploring get n8n as their primary platform.
    """
    if user.get("primary_platform"):
        raise HTTPException(status_code=409, detail="Onboarding already completed")

    primary = DEFAULT_PRIMARY_PLATFORM if data.platform == EXPLORING else data.platform
    usage = usage_service.calculate_initial_usage(primary)

    try:
        db = database.get_db()
        await db.users.update_one(
            {"uid": user["uid"]},
            {"$set": {
                "primary_platform": primary,
                "usage": {p: u.model_dump() for p, u in usage.items()},
                "onboarded_at": datetime.now(timezone.utc).isoformat(),
            }}
        )
    except Exception as e:
        logger.error(f"Onboarding failed for {user['uid']}: {e}")
        raise HTTPException(status_code=500, detail="Failed to complete onboarding")

    await analytics_service.track(
        "onboarding_completed",
        {"selected_platform": data.platform, "primary_platform": primary},
        user_id=user["uid"],
    )
    await analytics_service.track_conversion_step(user["uid"], FunnelStep.ACTIVATED, {"platform": primary})

    logger.info(f"Onboarding completed: user={user['uid']} primary_platform={primary}")
    return {
        "success": True,
        "primary_platform": primary,
        "usage": usage,
    }


@router.get("/status")
async def onboarding_status(user: dict = Depends(require_auth)):
    primary = user.get("primary_platform")
    return {"completed": bool(primary), "primary_platform": primary}
