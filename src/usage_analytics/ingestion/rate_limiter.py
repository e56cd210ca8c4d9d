"""
Per-project rate limiting on wall-clock minute buckets.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Dict, Any

from ..storage.cache import CacheStore
from ..utils.logging import get_logger

logger = get_logger("usage-analytics.ingestion.rate_limiter")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitInfo:
    """Result of a rate limit check."""
    count: int
    limit: int
    window_seconds: int
    reset_at: datetime
    exceeded: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "limit": self.limit,
            "windowSeconds": self.window_seconds,
            "resetAt": self.reset_at.isoformat(),
            "exceeded": self.exceeded,
        }


class RateLimiter:
    """Counts events per project per minute in the shared cache.

    Check and increment are separate calls, so concurrent batches can be
    over-admitted by at most one in-flight batch.
    """

    def __init__(
        self,
        cache: CacheStore,
        limit_per_minute: int = 1000,
        window_seconds: int = 60,
        key_ttl_seconds: int = 120,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.cache = cache
        self.limit = limit_per_minute
        self.window_seconds = window_seconds
        self.key_ttl_seconds = key_ttl_seconds
        self.clock = clock or utcnow

    def bucket_key(self, project_id: str, now: Optional[datetime] = None) -> str:
        now = (now or self.clock()).astimezone(timezone.utc)
        return f"ratelimit:{project_id}:{now.strftime('%Y-%m-%d-%H-%M')}"

    async def check_limit(self, project_id: str, n: int) -> RateLimitInfo:
        """Would ``n`` more events exceed the current minute's budget?"""
        now = self.clock().astimezone(timezone.utc)
        reset_at = now.replace(second=0, microsecond=0) + timedelta(minutes=1)

        try:
            raw = await self.cache.get(self.bucket_key(project_id, now))
            count = int(raw) if raw else 0
        except Exception as e:
            # Cache outage fails open
            logger.warning("rate_limit_check_failed", project_id=project_id, error=str(e))
            count = 0

        return RateLimitInfo(
            count=count,
            limit=self.limit,
            window_seconds=self.window_seconds,
            reset_at=reset_at,
            exceeded=count + n > self.limit,
        )

    async def increment(self, project_id: str, n: int) -> int:
        """Add ``n`` to the current bucket and refresh its expiry."""
        if n <= 0:
            return 0
        key = self.bucket_key(project_id)
        try:
            count = await self.cache.incrby(key, n)
            await self.cache.expire(key, self.key_ttl_seconds)
        except Exception as e:
            # Accepted events stay accepted; the minute goes uncounted
            logger.warning("rate_limit_increment_failed", project_id=project_id, count=n, error=str(e))
            return 0
        return count
