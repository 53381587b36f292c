"""Rate limiting for public registration endpoints (per source address)."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import logging

from services.errors import RateLimited

logger = logging.getLogger(__name__)

class RateLimiter:
    def __init__(self):
        # In-memory, per process. A shared store is needed once there is more than one worker.
        self.attempts: Dict[str, List[datetime]] = {}

    async def check_rate_limit(
        self,
        key: str,
        max_attempts: int,
        window_minutes: int,
        now: Optional[datetime] = None,
    ) -> tuple[bool, Optional[str]]:
        """
        Check if rate limit is exceeded and record the attempt when it is not.

        Returns:
            (allowed: bool, error_message: Optional[str])
        """
        now = now or datetime.now(timezone.utc)
        window = timedelta(minutes=window_minutes)

        recent = [t for t in self.attempts.pop(key, []) if now - t < window]

        if len(recent) >= max_attempts:
            self.attempts[key] = recent
            wait_until = min(recent) + window
            wait_seconds = max(int((wait_until - now).total_seconds()), 1)
            return False, f"Too many attempts. Please try again in {wait_seconds} seconds."

        recent.append(now)
        self.attempts[key] = recent
        return True, None

    async def enforce(self, key: str, max_attempts: int, window_minutes: int) -> None:
        """check_rate_limit that raises RateLimited instead of returning a flag."""
        allowed, message = await self.check_rate_limit(key, max_attempts, window_minutes)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}")
            raise RateLimited(f"rate limit exceeded for {key}", user_message=message)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self.attempts.clear()
        else:
            self.attempts.pop(key, None)

rate_limiter = RateLimiter()
