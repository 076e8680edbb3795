"""
Per-actor command rate limiter.

Redis-backed fixed window: one counter per (actor, command) per minute, so
every API process shares the same budget.
"""

from typing import Optional

import redis.asyncio as aioredis

from ...services.errors import PipelineError

_redis_client: Optional[aioredis.Redis] = None

WINDOW_SECONDS = 60


class RateLimitExceeded(PipelineError):
    """Raised when an actor exceeds the command budget for the current window."""

    status_code = 429
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, current_count: int, limit: int):
        super().__init__(message, details={"current_count": current_count, "limit": limit})
        self.current_count = current_count
        self.limit = limit


async def init_rate_limiter(redis_url: str) -> None:
    global _redis_client
    _redis_client = aioredis.from_url(redis_url, decode_responses=True)
    print("[RateLimiter] Redis connected")


async def close_rate_limiter() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def get_rate_limit_client() -> Optional[aioredis.Redis]:
    return _redis_client


class CommandRateLimiter:
    def __init__(self, redis: Optional[aioredis.Redis], limit_per_minute: int):
        self.redis = redis
        self.limit = limit_per_minute

    @staticmethod
    def key(actor_id, command: str) -> str:
        return f"ratelimit:{command}:{actor_id}"

    async def check_and_record(self, actor_id, command: str) -> int:
        """Count this call and raise RateLimitExceeded when over the limit.

        Returns the count in the current window. A limiter without a Redis
        client or with a non-positive limit allows everything.
        """
        if self.redis is None or self.limit <= 0:
            return 0

        key = self.key(actor_id, command)
        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, WINDOW_SECONDS)
        if count > self.limit:
            print(f"[RateLimiter] BLOCKED {command} for {actor_id} ({count}/{self.limit})")
            raise RateLimitExceeded(
                f"Too many {command} requests, try again in a minute",
                current_count=count,
                limit=self.limit,
            )
        return count
