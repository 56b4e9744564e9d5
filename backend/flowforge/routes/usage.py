"""FlowForge Usage Routes

Endpoints:
- GET /api/usage - Usage map, summary, conversion probability, next reset
- GET /api/usage/check/{platform} - Admission check for one platform
- GET /api/usage/upgrade-prompt - Which upgrade prompt to show, if any
- GET /api/usage/upgrade-offer - Discount offer for the upgrade modal
- GET /api/usage/statistics - Aggregated usage (admin)
"""

from fastapi import APIRouter, HTTPException, Depends
import logging

from flowforge.models.usage import (
    UsageLimit,
    UsageOverview,
    UpgradePrompt,
    UpgradeOffer,
    UsageStatistics,
    PLATFORMS,
)
from flowforge.services.usage_service import usage_service, parse_usage
from middleware import require_auth, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/usage", tags=["Usage"])


def _probability_for(user: dict, usage) -> float:
    days = usage_service.days_since_signup(user.get("created_at"))
    return usage_service.predict_conversion_probability(usage, days)


@router.get("", response_model=UsageOverview)
async def get_usage(user: dict = Depends(require_auth)):
    usage = parse_usage(user.get("usage"))
    return UsageOverview(
        plan=user.get("plan", "free"),
        primary_platform=user.get("primary_platform"),
        usage=usage,
        summary=usage_service.get_usage_summary(usage),
        conversion_probability=round(_probability_for(user, usage), 4),
        next_reset_date=usage_service.get_next_reset_date().isoformat(),
    )


@router.get("/check/{platform}", response_model=UsageLimit)
async def check_platform(platform: str, user: dict = Depends(require_auth)):
    if platform not in PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {platform}")
    return usage_service.check_usage_limit(
        user["uid"],
        platform,
        user.get("plan", "free"),
        parse_usage(user.get("usage")),
    )


@router.get("/upgrade-prompt", response_model=UpgradePrompt)
async def get_upgrade_prompt(user: dict = Depends(require_auth)):
    usage = parse_usage(user.get("usage"))
    return usage_service.should_show_upgrade_prompt(
        user.get("plan"),
        usage,
        _probability_for(user, usage),
    )


@router.get("/upgrade-offer", response_model=UpgradeOffer)
async def get_upgrade_offer(user: dict = Depends(require_auth)):
    return usage_service.get_offer_for_user(user)


@router.get("/statistics", response_model=UsageStatistics)
async def get_statistics(admin: dict = Depends(require_admin)):
    try:
        return await usage_service.get_usage_statistics()
    except Exception as e:
        logger.error(f"Failed to get usage statistics: {e}")
        raise HTTPException(status_code=500, detail="Failed to get usage statistics")
