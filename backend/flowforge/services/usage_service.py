"""FlowForge Usage Service

Freemium quota engine:
- Primary platform gets 3 workflows/month, every other platform gets 10
- Admission decisions with conversion trigger classification
- Upgrade prompt / offer selection from usage counters and account age
- Monthly reset and plan changes (paid plans are unlimited)

The decision functions are pure; only the persistence methods touch the DB.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union
import asyncio
import math
import logging

from database import database
from flowforge.models.usage import (
    UsageData,
    UserUsage,
    UsageLimit,
    UsageSummary,
    UpgradePrompt,
    UpgradeOffer,
    DiscountedPrice,
    UsageStatistics,
    ConversionTrigger,
    PromptType,
    PLATFORMS,
    DEFAULT_PRIMARY_PLATFORM,
    PRIMARY_PLATFORM_LIMIT,
    SECONDARY_PLATFORM_LIMIT,
    UNLIMITED,
    EXPLORATION_USAGE_RATIO,
    GENTLE_PROMPT_PROBABILITY,
    HIGH_USAGE_RATE,
    NEW_USER_DAYS,
    CONVERSION_RAMP_DAYS,
    PRO_FEATURES,
)
from flowforge.models.user import PAID_PLANS

logger = logging.getLogger(__name__)


def parse_usage(raw: Optional[Dict[str, Any]]) -> UserUsage:
    """Build a usage map from a stored user document's `usage` field."""
    if not raw:
        return {}
    return {
        platform: data if isinstance(data, UsageData) else UsageData(**data)
        for platform, data in raw.items()
    }


def _parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class UsageService:
    """Usage limits and conversion triggers."""

    def __init__(self):
        self.db = None
        self._background_tasks = set()

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    # =========================================================================
    # Quota arithmetic
    # =========================================================================

    def calculate_initial_usage(self, primary_platform: str) -> UserUsage:
        """Fewer workflows on the primary platform, more everywhere else."""
        usage: UserUsage = {}
        for platform in PLATFORMS:
            if platform == primary_platform:
                usage[platform] = UsageData(used=0, limit=PRIMARY_PLATFORM_LIMIT, is_primary=True)
            else:
                usage[platform] = UsageData(used=0, limit=SECONDARY_PLATFORM_LIMIT, is_primary=False)
        return usage

    def check_usage_limit(
        self,
        user_id: str,
        platform: str,
        user_plan: str,
        current_usage: UserUsage,
    ) -> UsageLimit:
        """Decide whether the user may generate one more workflow on `platform`.

        A denial schedules a conversion-opportunity record when an event
        loop is running.
        """
        if user_plan in PAID_PLANS:
            return UsageLimit(
                allowed=True,
                remaining=UNLIMITED,
                is_at_limit=False,
                will_trigger_upgrade=False,
            )

        platform_usage = current_usage.get(platform)
        if platform_usage is None:
            return UsageLimit(
                allowed=False,
                remaining=0,
                is_at_limit=True,
                will_trigger_upgrade=False,
                message="Platform not found in user usage data",
            )

        remaining = platform_usage.limit - platform_usage.used
        is_at_limit = remaining <= 0
        will_trigger_upgrade = remaining <= 1 and platform_usage.is_primary

        if is_at_limit:
            if platform_usage.is_primary:
                trigger = ConversionTrigger.PRIMARY_PLATFORM_LIMIT
                message = (
                    f"You've used all {platform_usage.limit} {platform} workflows this month. "
                    f"Upgrade to Pro for unlimited access to your main platform!"
                )
            else:
                trigger = ConversionTrigger.SECONDARY_PLATFORM_LIMIT
                message = (
                    f"You've used all {platform_usage.limit} {platform} workflows this month. "
                    f"Try {platform} with unlimited Pro access!"
                )

            self._schedule(self.track_conversion_opportunity(user_id, platform, trigger.value))

            return UsageLimit(
                allowed=False,
                remaining=0,
                is_at_limit=True,
                will_trigger_upgrade=platform_usage.is_primary,
                conversion_trigger=trigger,
                message=message,
            )

        return UsageLimit(
            allowed=True,
            remaining=remaining,
            is_at_limit=False,
            will_trigger_upgrade=will_trigger_upgrade,
        )

    def get_usage_summary(self, usage: UserUsage) -> UsageSummary:
        summary = UsageSummary()
        for platform, data in usage.items():
            summary.total_used += data.used
            summary.total_limit += data.limit
            if data.is_primary:
                summary.primary_platform_usage = data.used
            else:
                summary.secondary_platforms_usage += data.used
            if data.used >= data.limit:
                summary.platforms_at_limit.append(platform)
        return summary

    def predict_conversion_probability(self, usage: UserUsage, days_since_signup: int) -> float:
        """Blend primary usage rate, account age and secondary exploration into [0, 1]."""
        if not usage:
            return 0.0

        summary = self.get_usage_summary(usage)

        primary = next((p for p, data in usage.items() if data.is_primary), DEFAULT_PRIMARY_PLATFORM)
        primary_limit = usage[primary].limit if primary in usage else 0
        primary_usage_rate = summary.primary_platform_usage / primary_limit if primary_limit else 0.0

        exploration_score = 1.2 if summary.secondary_platforms_usage > 0 else 1.0
        time_score = min(days_since_signup / CONVERSION_RAMP_DAYS, 1)

        probability = primary_usage_rate * 0.6 + time_score * 0.3 + (exploration_score - 1) * 0.1
        return min(max(probability, 0.0), 1.0)

    def get_next_reset_date(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        if now.month == 12:
            return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)

    def days_since_signup(self, created_at: Union[str, datetime, None], now: Optional[datetime] = None) -> int:
        created = _parse_timestamp(created_at)
        if created is None:
            return 0
        now = now or datetime.now(timezone.utc)
        return max((now - created).days, 0)

    # =========================================================================
    # Upgrade prompts
    # =========================================================================

    def should_show_upgrade_prompt(
        self,
        plan: Optional[str],
        usage: Optional[UserUsage],
        conversion_probability: float,
    ) -> UpgradePrompt:
        hidden = UpgradePrompt(show=False, type=PromptType.GENTLE, message="")
        if not usage or plan != "free":
            return hidden

        # Primary platform near/at limit
        primary = next((p for p, data in usage.items() if data.is_primary), None)
        if primary:
            primary_usage = usage[primary]
            remaining = primary_usage.limit - primary_usage.used

            if remaining <= 0:
                return UpgradePrompt(
                    show=True,
                    type=PromptType.URGENT,
                    platform=primary,
                    message=(
                        f"🔥 You've used all {primary_usage.limit} {primary} workflows! "
                        f"Upgrade for unlimited access to your main platform."
                    ),
                )
            if remaining == 1:
                return UpgradePrompt(
                    show=True,
                    type=PromptType.URGENT,
                    platform=primary,
                    message=f"⚠️ Only 1 {primary} workflow left! Upgrade now to avoid interruption.",
                )

        # Heavy use of a secondary platform
        for platform, data in usage.items():
            if not data.is_primary and data.used >= data.limit * EXPLORATION_USAGE_RATIO:
                return UpgradePrompt(
                    show=True,
                    type=PromptType.EXPLORATION,
                    platform=platform,
                    message=f"💡 Loving {platform}? Upgrade for unlimited workflows on all platforms!",
                )

        if conversion_probability > GENTLE_PROMPT_PROBABILITY:
            return UpgradePrompt(
                show=True,
                type=PromptType.GENTLE,
                message="🚀 Ready to scale your automation? Upgrade for unlimited workflows and priority support.",
            )

        return hidden

    def get_optimal_upgrade_offer(
        self,
        summary: Optional[UsageSummary],
        days_since_signup: int,
    ) -> UpgradeOffer:
        if summary is None:
            return UpgradeOffer(discount=0, urgency="", features=[])

        total_usage_rate = summary.total_used / summary.total_limit if summary.total_limit else 0.0

        discount = 0
        urgency = ""
        if summary.platforms_at_limit:
            discount = 25
            urgency = "Limited time: 25% off to remove all limits!"
        elif total_usage_rate > HIGH_USAGE_RATE:
            discount = 20
            urgency = "High usage detected: 20% off Pro plan!"
        elif days_since_signup <= NEW_USER_DAYS:
            discount = 30
            urgency = "New user special: 30% off first month!"

        return UpgradeOffer(discount=discount, urgency=urgency, features=list(PRO_FEATURES))

    def get_offer_for_user(self, user: Dict[str, Any]) -> UpgradeOffer:
        """Upgrade offer for a stored user document."""
        usage = parse_usage(user.get("usage"))
        return self.get_optimal_upgrade_offer(
            self.get_usage_summary(usage),
            self.days_since_signup(user.get("created_at")),
        )

    def calculate_discounted_price(self, original_price: float, discount_percent: float) -> DiscountedPrice:
        savings = original_price * discount_percent / 100
        return DiscountedPrice(
            discounted_price=_round_half_up(original_price - savings),
            savings=_round_half_up(savings),
        )

    # =========================================================================
    # Persistence
    # =========================================================================

    async def increment_usage(self, user_id: str, platform: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            db = self._get_db()
            await db.users.update_one(
                {"uid": user_id},
                {
                    "$inc": {f"usage.{platform}.used": 1},
                    "$set": {"last_used_at": now},
                }
            )
        except Exception as e:
            logger.error(f"Error incrementing usage for {user_id}/{platform}: {e}")
            raise ValueError("Failed to update usage count")

        await self.track_usage_analytics(user_id, platform)

    async def reserve_usage(self, user_id: str, platform: str) -> bool:
        """Claim one workflow slot on `platform` if the stored counter is under its limit.

        The check and the increment are a single conditional write, so
        concurrent requests cannot admit past the limit. False means the
        quota is exhausted.
        """
        used = f"$usage.{platform}.used"
        limit = f"$usage.{platform}.limit"
        try:
            db = self._get_db()
            result = await db.users.update_one(
                {
                    "uid": user_id,
                    "$expr": {"$lt": [used, limit]},
                },
                {
                    "$inc": {f"usage.{platform}.used": 1},
                    "$set": {"last_used_at": datetime.now(timezone.utc).isoformat()},
                }
            )
        except Exception as e:
            logger.error(f"Error reserving usage for {user_id}/{platform}: {e}")
            raise ValueError("Failed to update usage count")
        return result.modified_count == 1

    async def release_usage(self, user_id: str, platform: str) -> None:
        """Give back a slot taken by reserve_usage when the generation is not delivered."""
        try:
            db = self._get_db()
            await db.users.update_one(
                {"uid": user_id, f"usage.{platform}.used": {"$gt": 0}},
                {"$inc": {f"usage.{platform}.used": -1}}
            )
        except Exception as e:
            logger.error(f"Error releasing usage for {user_id}/{platform}: {e}")

    async def track_usage_analytics(self, user_id: str, platform: str) -> None:
        now = datetime.now(timezone.utc)
        try:
            db = self._get_db()
            await db.usage_analytics.insert_one({
                "user_id": user_id,
                "platform": platform,
                "timestamp": now.isoformat(),
                "date": now.strftime("%Y-%m-%d"),
                "month": now.strftime("%Y-%m"),
            })
        except Exception as e:
            logger.error(f"Error tracking usage analytics: {e}")

    async def reset_monthly_usage(self, user_id: str, current_usage: UserUsage) -> UserUsage:
        reset_usage = {
            platform: UsageData(used=0, limit=data.limit, is_primary=data.is_primary)
            for platform, data in current_usage.items()
        }
        try:
            db = self._get_db()
            await db.users.update_one(
                {"uid": user_id},
                {"$set": {
                    "usage": {p: d.model_dump() for p, d in reset_usage.items()},
                    "last_reset_at": datetime.now(timezone.utc).isoformat(),
                }}
            )
        except Exception as e:
            logger.error(f"Error resetting monthly usage for {user_id}: {e}")
            raise ValueError("Failed to reset monthly usage")
        return reset_usage

    async def update_plan_usage(self, user_id: str, new_plan: str) -> UserUsage:
        """Apply plan limits: unlimited for paid plans, free quotas otherwise."""
        db = self._get_db()
        user = await db.users.find_one({"uid": user_id}, {"_id": 0, "usage": 1, "primary_platform": 1})
        if not user:
            raise ValueError(f"User {user_id} not found")

        if new_plan in PAID_PLANS:
            stored = parse_usage(user.get("usage"))
            new_usage = {
                platform: UsageData(
                    used=stored[platform].used if platform in stored else 0,
                    limit=UNLIMITED,
                    is_primary=stored[platform].is_primary if platform in stored else False,
                )
                for platform in PLATFORMS
            }
        else:
            primary = user.get("primary_platform") or DEFAULT_PRIMARY_PLATFORM
            new_usage = self.calculate_initial_usage(primary)

        try:
            await db.users.update_one(
                {"uid": user_id},
                {"$set": {
                    "usage": {p: d.model_dump() for p, d in new_usage.items()},
                    "plan": new_plan,
                    "plan_updated_at": datetime.now(timezone.utc).isoformat(),
                }}
            )
        except Exception as e:
            logger.error(f"Error updating plan usage for {user_id}: {e}")
            raise ValueError("Failed to update plan usage")

        logger.info(f"Plan usage updated: {user_id} -> {new_plan}")
        return new_usage

    # =========================================================================
    # Conversion tracking
    # =========================================================================

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def track_conversion_opportunity(self, user_id: str, platform: str, trigger: str) -> None:
        try:
            db = self._get_db()
            await db.conversion_opportunities.insert_one({
                "user_id": user_id,
                "platform": platform,
                "trigger": trigger,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "converted": False,
            })
        except Exception as e:
            logger.error(f"Error tracking conversion opportunity: {e}")

    async def mark_conversions(self, user_id: str) -> int:
        """Flag the user's open conversion opportunities as converted."""
        db = self._get_db()
        result = await db.conversion_opportunities.update_many(
            {"user_id": user_id, "converted": False},
            {"$set": {
                "converted": True,
                "converted_at": datetime.now(timezone.utc).isoformat(),
            }}
        )
        return result.modified_count

    async def get_usage_statistics(self, now: Optional[datetime] = None) -> UsageStatistics:
        """Aggregated usage data for the admin dashboard."""
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        total_workflows = await db.usage_analytics.count_documents({})

        platform_rows = await db.usage_analytics.aggregate([
            {"$group": {"_id": "$platform", "count": {"$sum": 1}}}
        ]).to_list(None)
        platform_usage = {p: 0 for p in PLATFORMS}
        for row in platform_rows:
            if row.get("_id"):
                platform_usage[row["_id"]] = row["count"]

        opportunities = await db.conversion_opportunities.count_documents({})
        converted = await db.conversion_opportunities.count_documents({"converted": True})
        conversion_rate = round(converted / opportunities, 4) if opportunities else 0.0

        this_month = now.strftime("%Y-%m")
        if now.month == 1:
            last_month = f"{now.year - 1}-12"
        else:
            last_month = f"{now.year}-{now.month - 1:02d}"
        this_count = await db.usage_analytics.count_documents({"month": this_month})
        last_count = await db.usage_analytics.count_documents({"month": last_month})
        if last_count:
            monthly_growth = round((this_count - last_count) / last_count * 100, 2)
        else:
            monthly_growth = 100.0 if this_count else 0.0

        return UsageStatistics(
            total_workflows=total_workflows,
            conversion_rate=conversion_rate,
            platform_usage=platform_usage,
            monthly_growth=monthly_growth,
        )


usage_service = UsageService()
