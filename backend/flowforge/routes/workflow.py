"""FlowForge Workflow Routes

Endpoints:
- POST /api/generate-workflow - Generate a workflow (rate limited, usage gated)
- GET /api/workflows/history/{user_id} - Paginated generation history
- GET /api/workflows/templates - Template gallery
- POST /api/workflows/validate - Validate a workflow against its platform schema
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from fastapi.responses import JSONResponse
from typing import Optional
from datetime import datetime, timezone
import logging
import os

from database import database
from flowforge.models.workflow import (
    WorkflowGenerationRequest,
    WorkflowValidationRequest,
    WorkflowRecord,
    WORKFLOW_TEMPLATES,
    TEMPLATE_CATEGORIES,
    VALIDATION_SUGGESTIONS,
)
from flowforge.models.usage import PLATFORMS, UNLIMITED, UsageLimit
from flowforge.models.user import PAID_PLANS
from flowforge.models.analytics import FunnelStep
from flowforge.services.usage_service import usage_service, parse_usage
from flowforge.services.openai_service import openai_service
from flowforge.services.analytics_service import analytics_service
from middleware import require_auth, ensure_self_or_admin
from utils.rate_limiter import rate_limiter, WORKFLOW_RATE_LIMIT, WORKFLOW_RATE_WINDOW_MINUTES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Workflows"])


def _is_development() -> bool:
    return os.getenv("ENVIRONMENT", "production") == "development"


def _generation_error(e: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error during workflow generation",
            "message": str(e) if _is_development() else "Please try again later",
            "retryable": True,
        },
    )


async def _deny(user_id: str, platform: str, usage: dict, limit: UsageLimit) -> JSONResponse:
    platform_usage = usage.get(platform)
    await analytics_service.track_usage_limit_hit(
        user_id,
        platform,
        is_primary=bool(platform_usage and platform_usage.is_primary),
        remaining=limit.remaining,
    )
    await analytics_service.track_conversion_step(user_id, FunnelStep.LIMITED, {"platform": platform})
    logger.info(f"Usage limit hit: user={user_id} platform={platform} trigger={limit.conversion_trigger}")
    return JSONResponse(
        status_code=403,
        content={
            "success": False,
            "error": limit.message,
            "conversion_trigger": limit.conversion_trigger.value if limit.conversion_trigger else None,
            "upgrade_required": True,
            "remaining": limit.remaining,
        },
    )


@router.post("/generate-workflow")
async def generate_workflow(data: WorkflowGenerationRequest, user: dict = Depends(require_auth)):
    """Generate a platform-specific workflow.

    Free users are checked against their monthly quota first; a denied
    request returns 403 with the conversion trigger so the client can open
    the upgrade modal. The slot is reserved with a conditional write before
    the model is called and handed back if the workflow is not delivered.
    """
    user_id = user["uid"]
    platform = data.platform

    rate = await rate_limiter.check_rate_limit(
        f"generate:{user_id}", WORKFLOW_RATE_LIMIT, WORKFLOW_RATE_WINDOW_MINUTES
    )
    if not rate.allowed:
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": "Rate limit exceeded. Please try again later.",
                "retry_after": rate.retry_after,
            },
            headers={"Retry-After": str(rate.retry_after)},
        )

    usage = parse_usage(user.get("usage"))
    plan = user.get("plan", "free")
    limit = usage_service.check_usage_limit(user_id, platform, plan, usage)
    if not limit.allowed:
        return await _deny(user_id, platform, usage, limit)

    metered = plan not in PAID_PLANS
    if metered:
        try:
            reserved = await usage_service.reserve_usage(user_id, platform)
        except ValueError as e:
            return _generation_error(e)
        if not reserved:
            # Another request took the last slot since the profile was read
            exhausted = usage[platform].model_copy(update={"used": usage[platform].limit})
            limit = usage_service.check_usage_limit(user_id, platform, plan, {**usage, platform: exhausted})
            return await _deny(user_id, platform, usage, limit)

    logger.info(
        f"Workflow generation request: user_id={user_id} platform={platform} input_length={len(data.input)}"
    )

    try:
        result = await openai_service.generate_workflow(data)
    except ValueError as e:
        if metered:
            await usage_service.release_usage(user_id, platform)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Workflow generation error: {e}", exc_info=True)
        if metered:
            await usage_service.release_usage(user_id, platform)
        return _generation_error(e)

    meta = result.metadata
    record = WorkflowRecord(
        user_id=user_id,
        platform=platform,
        input=data.input,
        workflow=result.workflow,
        complexity=meta.complexity,
        nodes_count=meta.nodes_count,
        tokens_used=meta.tokens_used,
        generation_time=meta.generation_time,
        fallback=result.fallback,
    )
    try:
        db = database.get_db()
        await db.workflows.insert_one(record.model_dump(mode="json"))
    except Exception as e:
        logger.error(f"Failed to store workflow {record.workflow_id}: {e}")
        if metered:
            await usage_service.release_usage(user_id, platform)
        return _generation_error(e)

    if metered:
        await usage_service.track_usage_analytics(user_id, platform)
    else:
        try:
            await usage_service.increment_usage(user_id, platform)
        except ValueError as e:
            logger.error(f"Usage tracking failed for {user_id}/{platform}: {e}")

    await analytics_service.track_workflow_generation(
        user_id,
        platform,
        input_length=len(data.input),
        output_nodes=meta.nodes_count,
        complexity=meta.complexity.value,
        generation_time=meta.generation_time,
        success=not result.fallback,
    )

    logger.info(
        f"Workflow generated successfully: user_id={user_id} platform={platform} "
        f"nodes_count={meta.nodes_count} complexity={meta.complexity.value} "
        f"tokens_used={meta.tokens_used} generation_time={meta.generation_time}ms fallback={result.fallback}"
    )

    remaining = limit.remaining if limit.remaining >= UNLIMITED else max(limit.remaining - 1, 0)
    return {
        "success": True,
        "workflow_id": record.workflow_id,
        "workflow": result.workflow,
        "metadata": {
            "platform": meta.platform,
            "nodes_count": meta.nodes_count,
            "complexity": meta.complexity.value,
            "generation_time": meta.generation_time,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
        "usage": {
            "remaining": remaining,
            "will_trigger_upgrade": limit.will_trigger_upgrade,
        },
    }


@router.get("/workflows/history/{user_id}")
async def workflow_history(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: dict = Depends(require_auth),
):
    """Generated workflows, newest first."""
    ensure_self_or_admin(user, user_id)

    try:
        db = database.get_db()
        total = await db.workflows.count_documents({"user_id": user_id})
        workflows = await db.workflows.find(
            {"user_id": user_id},
            {"_id": 0}
        ).sort("created_at", -1).skip(offset).limit(limit).to_list(limit)
    except Exception as e:
        logger.error(f"Workflow history error for {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch workflow history")

    return {
        "success": True,
        "workflows": workflows,
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        },
    }


@router.get("/workflows/templates")
async def workflow_templates(
    platform: Optional[str] = None,
    category: Optional[str] = None,
):
    templates = WORKFLOW_TEMPLATES
    if platform:
        templates = [t for t in templates if t.platform == platform]
    if category:
        templates = [t for t in templates if t.category == category]

    return {
        "success": True,
        "templates": templates,
        "categories": TEMPLATE_CATEGORIES,
        "platforms": PLATFORMS,
    }


@router.post("/workflows/validate")
async def validate_workflow(data: WorkflowValidationRequest):
    if not data.workflow or not data.platform:
        raise HTTPException(status_code=400, detail="Workflow and platform are required")

    validation = openai_service.validate_workflow(data.workflow, data.platform)
    if validation.valid:
        return {"success": True, "valid": True, "message": "Workflow validation passed"}

    return {
        "success": True,
        "valid": False,
        "errors": validation.errors,
        "suggestions": VALIDATION_SUGGESTIONS,
    }
