"""FlowForge Analytics Routes

Endpoints:
- POST /api/analytics/track - Store a product event
- POST /api/analytics/metrics - Store a business metric
- GET /api/analytics/user/{user_id} - Per-user timeline and funnel position
- GET /api/analytics/business - Revenue, user and product KPIs (admin)
- GET /api/analytics/funnel - Conversion funnel (admin)
- GET /api/analytics/platforms - Platform breakdown (admin)
"""

from fastapi import APIRouter, HTTPException, Depends, Request, Query
import logging

from flowforge.models.analytics import AnalyticsEvent, BusinessMetric
from flowforge.services.analytics_service import analytics_service
from middleware import require_auth, require_admin, ensure_self_or_admin, get_token_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


@router.post("/track")
async def track_event(data: AnalyticsEvent, request: Request):
    """Store a client event.

    Anonymous events are accepted; with a bearer token the event is
    attributed to the token's user and a different body `user_id` is refused.
    """
    payload = await get_token_payload(request)
    token_user = payload.get("sub") if payload else None

    if data.user_id and data.user_id != token_user:
        if token_user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        logger.warning(f"Event attribution refused: token={token_user} body={data.user_id} event={data.event}")
        raise HTTPException(status_code=403, detail="Insufficient permissions")

    await analytics_service.track(
        data.event,
        data.properties,
        user_id=token_user,
        timestamp=data.timestamp,
    )
    return {"success": True, "message": "Event tracked successfully"}


@router.post("/metrics")
async def track_metric(data: BusinessMetric, user: dict = Depends(require_auth)):
    await analytics_service.track_business_metric(
        data.metric,
        data.value,
        data.dimensions,
        timestamp=data.timestamp,
    )
    logger.info(f"Business metric tracked: {data.metric}={data.value} user={user['uid']}")
    return {"success": True, "message": "Metric tracked successfully"}


@router.get("/user/{user_id}")
async def user_analytics(
    user_id: str,
    time_range: str = Query("30d"),
    user: dict = Depends(require_auth),
):
    ensure_self_or_admin(user, user_id)
    try:
        analytics = await analytics_service.get_user_analytics(user_id, time_range)
        return {"success": True, "analytics": analytics}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Get user analytics error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get user analytics")


@router.get("/business")
async def business_metrics(
    time_range: str = Query("30d"),
    admin: dict = Depends(require_admin),
):
    try:
        metrics = await analytics_service.get_business_metrics(time_range)
        return {"success": True, "metrics": metrics}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Get business metrics error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get business metrics")


@router.get("/funnel")
async def conversion_funnel(
    time_range: str = Query("30d"),
    admin: dict = Depends(require_admin),
):
    try:
        funnel = await analytics_service.get_conversion_funnel(time_range)
        return {"success": True, "funnel": funnel}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Get funnel data error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get funnel data")


@router.get("/platforms")
async def platform_analytics(
    time_range: str = Query("30d"),
    admin: dict = Depends(require_admin),
):
    try:
        platforms = await analytics_service.get_platform_analytics(time_range)
        return {"success": True, "platforms": platforms}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Get platform analytics error: {e}")
        raise HTTPException(status_code=500, detail="Failed to get platform analytics")
