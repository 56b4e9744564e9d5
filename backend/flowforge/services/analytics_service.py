"""FlowForge Analytics Service

Stores product events and business metrics, and aggregates them for the
user timeline and the admin dashboard (business KPIs, conversion funnel,
platform breakdown).

Tracking never raises: a failed write is logged and dropped.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List
from collections import Counter
import logging

from database import database
from flowforge.models.analytics import FunnelStep, FUNNEL_ORDER, TIME_RANGES
from flowforge.models.billing import PLAN_AMOUNTS
from flowforge.models.usage import PLATFORMS
from flowforge.models.user import PAID_PLANS

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime] = None) -> str:
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def resolve_since(time_range: str, now: Optional[datetime] = None) -> Optional[str]:
    """ISO lower bound for a `7d`/`30d`/`90d` range; None for `all`."""
    if time_range == "all":
        return None
    if time_range not in TIME_RANGES:
        raise ValueError(f"Invalid time range: {time_range}. Use one of: 7d, 30d, 90d, all")
    now = now or datetime.now(timezone.utc)
    return _iso(now - timedelta(days=TIME_RANGES[time_range]))


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


class AnalyticsService:
    """Event tracking and dashboard aggregation."""

    def __init__(self):
        self.db = None

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    # =========================================================================
    # Tracking
    # =========================================================================

    async def track(
        self,
        event: str,
        properties: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        try:
            db = self._get_db()
            await db.analytics_events.insert_one({
                "event": event,
                "user_id": user_id,
                "properties": properties or {},
                "timestamp": _iso(timestamp),
            })
            logger.debug(f"Analytics event tracked: {event} user={user_id}")
        except Exception as e:
            logger.error(f"Failed to track analytics event {event}: {e}")

    async def track_conversion_step(
        self,
        user_id: Optional[str],
        step: FunnelStep,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None:
        step = FunnelStep(step)
        await self.track(
            f"funnel_{step.value}",
            {"funnel_step": step.value, **(properties or {})},
            user_id=user_id,
        )
        if step == FunnelStep.SIGNUP:
            await self.track("conversion_signup", properties, user_id=user_id)
        elif step == FunnelStep.CONVERTED:
            await self.track("conversion_subscription", properties, user_id=user_id)

    async def track_workflow_generation(
        self,
        user_id: str,
        platform: str,
        input_length: int,
        output_nodes: int,
        complexity: str,
        generation_time: int,
        success: bool,
    ) -> None:
        await self.track(
            "workflow_generated",
            {
                "platform": platform,
                "input_length": input_length,
                "output_nodes": output_nodes,
                "complexity": complexity,
                "generation_time_ms": generation_time,
                "success": success,
            },
            user_id=user_id,
        )
        await self.track_business_metric(
            "workflows_generated", 1, {"platform": platform, "complexity": complexity}
        )

    async def track_usage_limit_hit(
        self,
        user_id: str,
        platform: str,
        is_primary: bool,
        remaining: int,
    ) -> None:
        await self.track(
            "usage_limit_hit",
            {
                "platform": platform,
                "is_primary_platform": is_primary,
                "remaining_workflows": remaining,
                "conversion_opportunity": True,
            },
            user_id=user_id,
        )
        if is_primary and remaining == 0:
            await self.track(
                "conversion_limit_reached",
                {"platform": platform, "value": PLAN_AMOUNTS["pro"]["monthly"] / 100},
                user_id=user_id,
            )

    async def track_subscription(
        self,
        user_id: Optional[str],
        event: str,
        plan: str,
        interval: str,
        amount: float,
        currency: str = "usd",
    ) -> None:
        """`event` is one of started, upgraded, cancelled, renewed."""
        await self.track(
            f"subscription_{event}",
            {"plan": plan, "interval": interval, "amount": amount, "currency": currency},
            user_id=user_id,
        )
        if event in ("upgraded", "renewed"):
            await self.track_business_metric("revenue", amount, {"plan": plan, "interval": interval})

    async def track_business_metric(
        self,
        metric: str,
        value: float,
        dimensions: Optional[Dict[str, str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        try:
            db = self._get_db()
            await db.business_metrics.insert_one({
                "metric": metric,
                "value": value,
                "dimensions": dimensions or {},
                "timestamp": _iso(timestamp),
            })
        except Exception as e:
            logger.error(f"Failed to track business metric {metric}: {e}")

    # =========================================================================
    # Aggregation
    # =========================================================================

    async def get_user_analytics(self, user_id: str, time_range: str = "30d") -> Dict[str, Any]:
        db = self._get_db()
        since = resolve_since(time_range)

        query: Dict[str, Any] = {"user_id": user_id}
        workflow_query: Dict[str, Any] = {"user_id": user_id}
        if since:
            query["timestamp"] = {"$gte": since}
            workflow_query["created_at"] = {"$gte": since}

        total_events = await db.analytics_events.count_documents(query)
        workflows_generated = await db.workflows.count_documents(workflow_query)

        recent_events = await db.analytics_events.find(
            query, {"_id": 0, "event": 1, "timestamp": 1, "properties": 1}
        ).sort("timestamp", -1).limit(20).to_list(20)

        funnel_rows = await db.analytics_events.aggregate([
            {"$match": {"user_id": user_id, "event": {"$in": [f"funnel_{s}" for s in FUNNEL_ORDER]}}},
            {"$group": {"_id": "$event", "first": {"$min": "$timestamp"}}},
        ]).to_list(None)
        conversion_funnel = {}
        for row in funnel_rows:
            conversion_funnel[row["_id"][len("funnel_"):]] = row["first"]

        funnel_step = None
        for step in FUNNEL_ORDER:
            if step in conversion_funnel:
                funnel_step = step

        last_active = recent_events[0]["timestamp"] if recent_events else None
        if last_active is None:
            user = await db.users.find_one({"uid": user_id}, {"_id": 0, "last_used_at": 1})
            last_active = (user or {}).get("last_used_at")

        return {
            "user_id": user_id,
            "time_range": time_range,
            "summary": {
                "total_events": total_events,
                "workflows_generated": workflows_generated,
                "last_active": last_active,
                "conversion_funnel_step": funnel_step,
            },
            "events": recent_events,
            "conversion_funnel": conversion_funnel,
        }

    async def get_business_metrics(self, time_range: str = "30d") -> Dict[str, Any]:
        db = self._get_db()
        since = resolve_since(time_range)
        ts_match = {"timestamp": {"$gte": since}} if since else {}
        created_match = {"created_at": {"$gte": since}} if since else {}

        revenue_rows = await db.business_metrics.aggregate([
            {"$match": {"metric": "revenue", **ts_match}},
            {"$group": {"_id": None, "total": {"$sum": "$value"}}},
        ]).to_list(1)
        total_revenue = revenue_rows[0]["total"] if revenue_rows else 0

        plan_rows = await db.users.aggregate([
            {"$group": {"_id": "$plan", "count": {"$sum": 1}}},
        ]).to_list(None)
        plan_counts = {row["_id"]: row["count"] for row in plan_rows if row.get("_id")}
        total_users = sum(plan_counts.values())
        paid_users = sum(plan_counts.get(p, 0) for p in PAID_PLANS)
        mrr = sum(plan_counts.get(p, 0) * PLAN_AMOUNTS[p]["monthly"] for p in PAID_PLANS) / 100

        cancelled = await db.users.count_documents({"cancel_at_period_end": True, "plan": {"$in": list(PAID_PLANS)}})

        active_query = {"last_used_at": {"$gte": since}} if since else {"last_used_at": {"$ne": None}}
        active_users = await db.users.count_documents(active_query)
        new_signups = await db.users.count_documents(created_match)

        workflows = await db.workflows.count_documents(created_match)
        fallbacks = await db.workflows.count_documents({**created_match, "fallback": True})

        platform_rows = await db.workflows.aggregate([
            {"$match": created_match},
            {"$group": {"_id": "$platform", "count": {"$sum": 1}}},
        ]).to_list(None)
        platform_counts = {row["_id"]: row["count"] for row in platform_rows}

        daily_rows = await db.workflows.aggregate([
            {"$match": created_match},
            {"$group": {"_id": {"$substr": ["$created_at", 0, 10]}, "workflows": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]).to_list(None)

        return {
            "time_range": time_range,
            "revenue": {
                "total_revenue": total_revenue,
                "mrr": mrr,
                "arr": mrr * 12,
                "churn_rate": _pct(cancelled, paid_users),
            },
            "users": {
                "total_users": total_users,
                "active_users": active_users,
                "new_signups": new_signups,
                "paid_users": paid_users,
                "conversion_rate": _pct(paid_users, total_users),
            },
            "product": {
                "workflows_generated": workflows,
                "average_workflows_per_user": round(workflows / active_users, 1) if active_users else 0.0,
                "platform_usage": {p: _pct(platform_counts.get(p, 0), workflows) for p in PLATFORMS},
                "success_rate": _pct(workflows - fallbacks, workflows),
            },
            "time_series": [{"date": row["_id"], "workflows": row["workflows"]} for row in daily_rows],
        }

    async def get_conversion_funnel(self, time_range: str = "30d") -> Dict[str, Any]:
        db = self._get_db()
        since = resolve_since(time_range)
        match: Dict[str, Any] = {"event": {"$in": [f"funnel_{s}" for s in FUNNEL_ORDER]}}
        if since:
            match["timestamp"] = {"$gte": since}

        rows = await db.analytics_events.aggregate([
            {"$match": match},
            # anonymous events have no user_id; each one counts on its own
            {"$group": {"_id": {"event": "$event", "user": {"$ifNull": ["$user_id", "$_id"]}}}},
            {"$group": {"_id": "$_id.event", "count": {"$sum": 1}}},
        ]).to_list(None)
        counts = {row["_id"][len("funnel_"):]: row["count"] for row in rows}

        steps: List[Dict[str, Any]] = []
        conversion_rates: Dict[str, float] = {}
        dropoff_points: List[Dict[str, Any]] = []
        # Each rate is relative to the nearest earlier step with a non-zero count
        baseline = None
        for step in FUNNEL_ORDER:
            count = counts.get(step, 0)
            if baseline is None:
                percentage = 100.0 if count else 0.0
            else:
                base_step, base_count = baseline
                percentage = _pct(count, base_count)
                conversion_rates[f"{base_step}_to_{step}"] = percentage
                dropoff_points.append({
                    "step": f"{base_step}_to_{step}",
                    "dropoff": max(base_count - count, 0),
                })
            steps.append({"step": step, "count": count, "percentage": percentage})
            if count:
                baseline = (step, count)

        dropoff_points.sort(key=lambda d: d["dropoff"], reverse=True)

        return {
            "time_range": time_range,
            "steps": steps,
            "conversion_rates": conversion_rates,
            "dropoff_points": dropoff_points[:3],
        }

    async def get_platform_analytics(self, time_range: str = "30d") -> Dict[str, Any]:
        db = self._get_db()
        since = resolve_since(time_range)
        match = {"created_at": {"$gte": since}} if since else {}

        rows = await db.workflows.aggregate([
            {"$match": match},
            {"$group": {
                "_id": "$platform",
                "workflows": {"$sum": 1},
                "users": {"$addToSet": "$user_id"},
                "complexities": {"$push": "$complexity"},
            }},
        ]).to_list(None)
        by_platform = {row["_id"]: row for row in rows}

        total_workflows = sum(row["workflows"] for row in rows)
        all_users = set()
        for row in rows:
            all_users.update(row["users"])

        platforms = []
        for platform in PLATFORMS:
            row = by_platform.get(platform)
            workflows = row["workflows"] if row else 0
            users = len(row["users"]) if row else 0
            complexities = Counter(row["complexities"]) if row else Counter()
            platforms.append({
                "name": platform,
                "workflows": workflows,
                "users": users,
                "percentage": _pct(workflows, total_workflows),
                "avg_complexity": complexities.most_common(1)[0][0] if complexities else None,
            })
        platforms.sort(key=lambda p: p["workflows"], reverse=True)

        return {
            "time_range": time_range,
            "overview": {
                "total_workflows": total_workflows,
                "total_users": len(all_users),
                "average_workflows_per_user": round(total_workflows / len(all_users), 1) if all_users else 0.0,
            },
            "platforms": platforms,
        }


analytics_service = AnalyticsService()
