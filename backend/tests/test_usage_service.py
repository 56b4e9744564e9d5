"""
Usage engine: quota arithmetic, admission decisions, upgrade prompts/offers,
and the persistence operations (mocked database).
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from flowforge.models.usage import UsageData, UsageSummary, ConversionTrigger, PromptType, UNLIMITED
from flowforge.services.usage_service import usage_service, parse_usage


def _usage(primary="n8n", **used):
    usage = usage_service.calculate_initial_usage(primary)
    for platform, count in used.items():
        usage[platform].used = count
    return usage


class TestInitialUsage:
    def test_primary_platform_gets_fewer_workflows(self):
        usage = usage_service.calculate_initial_usage("zapier")
        assert usage["zapier"] == UsageData(used=0, limit=3, is_primary=True)
        for platform in ("n8n", "make", "power_automate"):
            assert usage[platform] == UsageData(used=0, limit=10, is_primary=False)

    def test_exactly_one_primary(self):
        usage = usage_service.calculate_initial_usage("make")
        assert [p for p, d in usage.items() if d.is_primary] == ["make"]

    def test_parse_usage_from_stored_document(self):
        usage = parse_usage({"n8n": {"used": 2, "limit": 3, "is_primary": True}})
        assert usage["n8n"].used == 2
        assert usage["n8n"].is_primary is True
        assert parse_usage(None) == {}


class TestCheckUsageLimit:
    def test_paid_plan_is_unlimited(self):
        for plan in ("pro", "enterprise"):
            result = usage_service.check_usage_limit("u1", "n8n", plan, _usage(n8n=3))
            assert result.allowed is True
            assert result.remaining == UNLIMITED
            assert result.is_at_limit is False
            assert result.will_trigger_upgrade is False

    def test_missing_platform_is_denied(self):
        result = usage_service.check_usage_limit("u1", "n8n", "free", {})
        assert result.allowed is False
        assert result.remaining == 0
        assert result.is_at_limit is True
        assert result.message == "Platform not found in user usage data"

    def test_primary_platform_at_limit(self):
        result = usage_service.check_usage_limit("u1", "n8n", "free", _usage(n8n=3))
        assert result.allowed is False
        assert result.remaining == 0
        assert result.will_trigger_upgrade is True
        assert result.conversion_trigger == ConversionTrigger.PRIMARY_PLATFORM_LIMIT
        assert result.message == (
            "You've used all 3 n8n workflows this month. "
            "Upgrade to Pro for unlimited access to your main platform!"
        )

    def test_secondary_platform_at_limit(self):
        result = usage_service.check_usage_limit("u1", "zapier", "free", _usage(zapier=10))
        assert result.allowed is False
        assert result.will_trigger_upgrade is False
        assert result.conversion_trigger == ConversionTrigger.SECONDARY_PLATFORM_LIMIT
        assert result.message == (
            "You've used all 10 zapier workflows this month. Try zapier with unlimited Pro access!"
        )

    def test_last_primary_workflow_flags_upgrade(self):
        result = usage_service.check_usage_limit("u1", "n8n", "free", _usage(n8n=2))
        assert result.allowed is True
        assert result.remaining == 1
        assert result.will_trigger_upgrade is True
        assert result.conversion_trigger is None

    def test_last_secondary_workflow_does_not_flag_upgrade(self):
        result = usage_service.check_usage_limit("u1", "make", "free", _usage(make=9))
        assert result.allowed is True
        assert result.remaining == 1
        assert result.will_trigger_upgrade is False

    @pytest.mark.asyncio
    async def test_denial_records_conversion_opportunity(self):
        with patch.object(usage_service, "track_conversion_opportunity", new=AsyncMock()) as track:
            usage_service.check_usage_limit("u1", "n8n", "free", _usage(n8n=3))
            await asyncio.sleep(0)
        track.assert_awaited_once_with("u1", "n8n", "primary_platform_limit")

    @pytest.mark.asyncio
    async def test_conversion_opportunity_failure_is_swallowed(self):
        db = MagicMock()
        db.conversion_opportunities.insert_one = AsyncMock(side_effect=Exception("db down"))
        usage_service.db = db
        await usage_service.track_conversion_opportunity("u1", "n8n", "primary_platform_limit")
        db.conversion_opportunities.insert_one.assert_awaited_once()


class TestSummaryAndPrediction:
    def test_usage_summary(self):
        summary = usage_service.get_usage_summary(_usage(n8n=3, zapier=4, make=10))
        assert summary.total_used == 17
        assert summary.total_limit == 33
        assert summary.primary_platform_usage == 3
        assert summary.secondary_platforms_usage == 14
        assert sorted(summary.platforms_at_limit) == ["make", "n8n"]

    def test_probability_full_primary_with_exploration(self):
        p = usage_service.predict_conversion_probability(_usage(n8n=3, zapier=1), 14)
        assert p == pytest.approx(0.6 + 0.3 + 0.02)

    def test_probability_new_idle_user(self):
        assert usage_service.predict_conversion_probability(_usage(), 0) == 0

    def test_probability_without_primary_uses_n8n_limit(self):
        usage = {p: UsageData(used=0, limit=10) for p in ("n8n", "zapier", "make", "power_automate")}
        usage["zapier"].used = 5
        p = usage_service.predict_conversion_probability(usage, 7)
        assert p == pytest.approx(0.5 * 0.3 + 0.02)

    def test_probability_is_clamped(self):
        assert usage_service.predict_conversion_probability(_usage(n8n=10, make=1), 60) == 1.0

    def test_next_reset_date(self):
        assert usage_service.get_next_reset_date(datetime(2026, 3, 31, 18, 0, tzinfo=timezone.utc)) == \
            datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert usage_service.get_next_reset_date(datetime(2026, 12, 15, tzinfo=timezone.utc)) == \
            datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_days_since_signup(self):
        now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert usage_service.days_since_signup("2026-01-01T00:00:00+00:00", now) == 14
        assert usage_service.days_since_signup("2026-01-10T00:00:00Z", now) == 5
        assert usage_service.days_since_signup(None, now) == 0


class TestUpgradePrompt:
    def test_hidden_for_paid_plan(self):
        prompt = usage_service.should_show_upgrade_prompt("pro", _usage(n8n=3), 0.9)
        assert prompt.show is False

    def test_hidden_without_usage(self):
        assert usage_service.should_show_upgrade_prompt("free", {}, 0.9).show is False

    def test_urgent_when_primary_exhausted(self):
        prompt = usage_service.should_show_upgrade_prompt("free", _usage(n8n=3), 0.0)
        assert prompt.show is True
        assert prompt.type == PromptType.URGENT
        assert prompt.platform == "n8n"
        assert prompt.message == (
            "🔥 You've used all 3 n8n workflows! Upgrade for unlimited access to your main platform."
        )

    def test_urgent_when_one_primary_left(self):
        prompt = usage_service.should_show_upgrade_prompt("free", _usage(n8n=2), 0.0)
        assert prompt.type == PromptType.URGENT
        assert prompt.message == "⚠️ Only 1 n8n workflow left! Upgrade now to avoid interruption."

    def test_exploration_on_heavy_secondary_use(self):
        prompt = usage_service.should_show_upgrade_prompt("free", _usage(zapier=8), 0.0)
        assert prompt.type == PromptType.EXPLORATION
        assert prompt.platform == "zapier"
        assert prompt.message == "💡 Loving zapier? Upgrade for unlimited workflows on all platforms!"

    def test_gentle_on_high_probability(self):
        prompt = usage_service.should_show_upgrade_prompt("free", _usage(n8n=1), 0.71)
        assert prompt.show is True
        assert prompt.type == PromptType.GENTLE
        assert prompt.platform is None

    def test_hidden_otherwise(self):
        prompt = usage_service.should_show_upgrade_prompt("free", _usage(n8n=1), 0.7)
        assert prompt.show is False
        assert prompt.message == ""


class TestUpgradeOffer:
    def test_platform_at_limit_gets_25(self):
        summary = UsageSummary(total_used=3, total_limit=33, platforms_at_limit=["n8n"])
        offer = usage_service.get_optimal_upgrade_offer(summary, 30)
        assert offer.discount == 25
        assert offer.urgency == "Limited time: 25% off to remove all limits!"
        assert len(offer.features) == 5

    def test_high_usage_gets_20(self):
        summary = UsageSummary(total_used=27, total_limit=33)
        offer = usage_service.get_optimal_upgrade_offer(summary, 30)
        assert offer.discount == 20
        assert offer.urgency == "High usage detected: 20% off Pro plan!"

    def test_new_user_gets_30(self):
        offer = usage_service.get_optimal_upgrade_offer(UsageSummary(total_used=1, total_limit=33), 7)
        assert offer.discount == 30
        assert offer.urgency == "New user special: 30% off first month!"

    def test_no_offer(self):
        offer = usage_service.get_optimal_upgrade_offer(UsageSummary(total_used=1, total_limit=33), 8)
        assert offer.discount == 0
        assert offer.urgency == ""
        assert offer.features[0] == "Unlimited workflows on ALL platforms"

    def test_discounted_price_rounds_half_up(self):
        price = usage_service.calculate_discounted_price(19, 25)
        assert price.savings == 5
        assert price.discounted_price == 14
        price = usage_service.calculate_discounted_price(1900, 20)
        assert (price.discounted_price, price.savings) == (1520, 380)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_increment_usage(self):
        db = MagicMock()
        db.users.update_one = AsyncMock()
        db.usage_analytics.insert_one = AsyncMock()
        usage_service.db = db

        await usage_service.increment_usage("u1", "make")

        query, update = db.users.update_one.call_args.args
        assert query == {"uid": "u1"}
        assert update["$inc"] == {"usage.make.used": 1}
        assert "last_used_at" in update["$set"]
        row = db.usage_analytics.insert_one.call_args.args[0]
        assert row["platform"] == "make"
        assert len(row["date"]) == 10 and len(row["month"]) == 7

    @pytest.mark.asyncio
    async def test_increment_usage_failure(self):
        db = MagicMock()
        db.users.update_one = AsyncMock(side_effect=Exception("write concern"))
        usage_service.db = db
        with pytest.raises(ValueError, match="Failed to update usage count"):
            await usage_service.increment_usage("u1", "make")

    @pytest.mark.asyncio
    async def test_reserve_usage_is_conditional(self):
        db = MagicMock()
        db.users.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
        usage_service.db = db

        assert await usage_service.reserve_usage("u1", "n8n") is True

        query, update = db.users.update_one.call_args.args
        assert query == {"uid": "u1", "$expr": {"$lt": ["$usage.n8n.used", "$usage.n8n.limit"]}}
        assert update["$inc"] == {"usage.n8n.used": 1}
        assert "last_used_at" in update["$set"]

    @pytest.mark.asyncio
    async def test_reserve_usage_at_limit(self):
        db = MagicMock()
        db.users.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
        usage_service.db = db
        assert await usage_service.reserve_usage("u1", "n8n") is False

    @pytest.mark.asyncio
    async def test_reserve_usage_failure(self):
        db = MagicMock()
        db.users.update_one = AsyncMock(side_effect=Exception("not primary"))
        usage_service.db = db
        with pytest.raises(ValueError, match="Failed to update usage count"):
            await usage_service.reserve_usage("u1", "n8n")

    @pytest.mark.asyncio
    async def test_release_usage(self):
        db = MagicMock()
        db.users.update_one = AsyncMock()
        usage_service.db = db

        await usage_service.release_usage("u1", "zapier")

        query, update = db.users.update_one.call_args.args
        assert query == {"uid": "u1", "usage.zapier.used": {"$gt": 0}}
        assert update == {"$inc": {"usage.zapier.used": -1}}

    @pytest.mark.asyncio
    async def test_reset_keeps_limits_and_primary(self):
        db = MagicMock()
        db.users.update_one = AsyncMock()
        usage_service.db = db

        reset = await usage_service.reset_monthly_usage("u1", _usage("zapier", zapier=3, n8n=7))

        assert reset["zapier"] == UsageData(used=0, limit=3, is_primary=True)
        assert reset["n8n"] == UsageData(used=0, limit=10, is_primary=False)
        stored = db.users.update_one.call_args.args[1]["$set"]
        assert stored["usage"]["zapier"] == {"used": 0, "limit": 3, "is_primary": True}
        assert "last_reset_at" in stored

    @pytest.mark.asyncio
    async def test_upgrade_keeps_counts(self):
        db = MagicMock()
        stored = {p: d.model_dump() for p, d in _usage("make", make=2, n8n=4).items()}
        db.users.find_one = AsyncMock(return_value={"usage": stored, "primary_platform": "make"})
        db.users.update_one = AsyncMock()
        usage_service.db = db

        usage = await usage_service.update_plan_usage("u1", "pro")

        assert usage["make"] == UsageData(used=2, limit=UNLIMITED, is_primary=True)
        assert usage["n8n"] == UsageData(used=4, limit=UNLIMITED, is_primary=False)
        update = db.users.update_one.call_args.args[1]["$set"]
        assert update["plan"] == "pro"
        assert "plan_updated_at" in update

    @pytest.mark.asyncio
    async def test_downgrade_recomputes_free_limits(self):
        db = MagicMock()
        db.users.find_one = AsyncMock(return_value={"usage": {}, "primary_platform": None})
        db.users.update_one = AsyncMock()
        usage_service.db = db

        usage = await usage_service.update_plan_usage("u1", "free")

        assert usage["n8n"].limit == 3 and usage["n8n"].is_primary
        assert usage["zapier"].limit == 10

    @pytest.mark.asyncio
    async def test_update_plan_usage_unknown_user(self):
        db = MagicMock()
        db.users.find_one = AsyncMock(return_value=None)
        usage_service.db = db
        with pytest.raises(ValueError):
            await usage_service.update_plan_usage("missing", "pro")

    @pytest.mark.asyncio
    async def test_usage_statistics(self):
        counts = {
            "{}": 40,
            "{'converted': True}": 3,
            "{'month': '2026-10'}": 30,
            "{'month': '2026-09'}": 20,
        }
        db = MagicMock()
        db.usage_analytics.count_documents = AsyncMock(side_effect=lambda q: counts[str(q)])
        db.conversion_opportunities.count_documents = AsyncMock(
            side_effect=lambda q: 12 if q == {} else counts[str(q)]
        )
        db.usage_analytics.aggregate = MagicMock(return_value=MagicMock(
            to_list=AsyncMock(return_value=[{"_id": "n8n", "count": 25}, {"_id": "zapier", "count": 15}])
        ))
        usage_service.db = db

        stats = await usage_service.get_usage_statistics(now=datetime(2026, 10, 16, tzinfo=timezone.utc))

        assert stats.total_workflows == 40
        assert stats.conversion_rate == 0.25
        assert stats.platform_usage == {"n8n": 25, "zapier": 15, "make": 0, "power_automate": 0}
        assert stats.monthly_growth == 50.0
