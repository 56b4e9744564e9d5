"""
Shared job runner for scheduled background jobs.
Each run_* returns a dict with "message" and "count".
"""
import logging

from database import database
from flowforge.services.usage_service import usage_service, parse_usage

logger = logging.getLogger(__name__)


async def run_monthly_usage_reset():
    """Zero every user's monthly counters; limits and primary flags are kept."""
    try:
        db = database.get_db()
        cursor = db.users.find({}, {"_id": 0, "uid": 1, "usage": 1})
        count = 0
        failed = 0
        async for user in cursor:
            usage = parse_usage(user.get("usage"))
            if not usage:
                continue
            try:
                await usage_service.reset_monthly_usage(user["uid"], usage)
                count += 1
            except ValueError as e:
                failed += 1
                logger.error(f"Monthly usage reset failed for {user['uid']}: {e}")
        logger.info(f"Monthly usage reset job completed: {count} users reset, {failed} failed")
        return {"message": f"Monthly usage reset: {count} users", "count": count}
    except Exception as e:
        logger.error(f"Monthly usage reset job failed: {e}")
        raise
