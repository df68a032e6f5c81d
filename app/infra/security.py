import logging
import time
from collections import defaultdict, deque
from ipaddress import ip_address
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError
from starlette.requests import Request

logger = logging.getLogger("app.rate_limit")

WINDOW_SECONDS = 60


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    def __init__(self, requests_per_minute: int, cleanup_minutes: int = 10) -> None:
        self.requests_per_minute = requests_per_minute
        self.cleanup_seconds = cleanup_minutes * 60
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_prune = 0.0

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        self._prune(now)
        timestamps = self._requests[key]
        while timestamps and timestamps[0] <= now - WINDOW_SECONDS:
            timestamps.popleft()
        if len(timestamps) >= self.requests_per_minute:
            return False
        timestamps.append(now)
        return True

    async def reset(self) -> None:
        self._requests.clear()
        self._last_prune = 0.0

    async def close(self) -> None:
        return None

    def _prune(self, now: float) -> None:
        if now - self._last_prune < WINDOW_SECONDS:
            return
        stale_before = now - self.cleanup_seconds
        for key in [key for key, stamps in self._requests.items() if not stamps or stamps[-1] < stale_before]:
            del self._requests[key]
        self._last_prune = now


class RedisRateLimiter:
    """Fixed one-minute window counter; fails open when Redis is unreachable."""

    def __init__(self, redis_url: str, requests_per_minute: int, redis_client: redis.Redis | None = None) -> None:
        self.requests_per_minute = requests_per_minute
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def allow(self, key: str) -> bool:
        bucket = int(time.time() // WINDOW_SECONDS)
        redis_key = f"rate-limit:{key}:{bucket}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, WINDOW_SECONDS + 5)
                count, _ = await pipe.execute()
        except RedisError:
            logger.warning("rate_limiter_unavailable", extra={"extra": {"backend": "redis"}})
            return True
        return int(count) <= self.requests_per_minute

    async def reset(self) -> None:
        try:
            async for redis_key in self.redis.scan_iter(match="rate-limit:*", count=100):
                await self.redis.delete(redis_key)
        except RedisError:
            logger.warning("rate_limiter_reset_failed", extra={"extra": {"backend": "redis"}})

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limiter_close_failed", extra={"extra": {"backend": "redis"}})


def create_rate_limiter(app_settings) -> RateLimiter:
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(app_settings.redis_url, app_settings.rate_limit_per_minute)
    return InMemoryRateLimiter(
        app_settings.rate_limit_per_minute,
        cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
    )


def resolve_client_key(request: Request, trust_proxy_headers: bool) -> str:
    client_host = request.client.host if request.client else "unknown"
    if not trust_proxy_headers:
        return client_host
    forwarded_for = request.headers.get("x-forwarded-for")
    if not forwarded_for:
        return client_host
    first_ip = forwarded_for.split(",")[0].strip()
    try:
        ip_address(first_ip)
    except ValueError:
        return client_host
    return first_ip
