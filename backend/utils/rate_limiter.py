"""Sliding-window rate limiting for workflow generation - FlowForge AI"""
from datetime import datetime, timedelta, timezone
from typing import Optional, NamedTuple
import logging
import os

logger = logging.getLogger(__name__)

WORKFLOW_RATE_LIMIT = int(os.getenv("WORKFLOW_RATE_LIMIT", "10"))
WORKFLOW_RATE_WINDOW_MINUTES = int(os.getenv("WORKFLOW_RATE_WINDOW_MINUTES", "1"))


class RateLimitResult(NamedTuple):
    allowed: bool
    message: Optional[str] = None
    retry_after: int = 0


class RateLimiter:
    def __init__(self):
        # In-memory, per process
        self.attempts = {}

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_minutes: int
    ) -> RateLimitResult:
        """
        Record an attempt for `key` unless the window is already full.

        Returns:
            RateLimitResult(allowed, message, retry_after seconds)
        """
        now = datetime.now(timezone.utc)
        window = timedelta(minutes=window_minutes)

        self.attempts[key] = [
            timestamp for timestamp in self.attempts.get(key, [])
            if now - timestamp < window
        ]

        if len(self.attempts[key]) >= max_attempts:
            oldest = min(self.attempts[key])
            wait_seconds = max(int((oldest + window - now).total_seconds()), 1)
            logger.warning(f"Rate limit exceeded for {key}")
            return RateLimitResult(False, f"Rate limit exceeded. Try again in {wait_seconds} seconds", wait_seconds)

        self.attempts[key].append(now)
        return RateLimitResult(True)

    def reset(self, key: Optional[str] = None):
        if key is None:
            self.attempts.clear()
        else:
            self.attempts.pop(key, None)


rate_limiter = RateLimiter()
