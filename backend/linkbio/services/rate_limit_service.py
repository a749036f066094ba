"""Fixed-window rate limiting for unauthenticated auth endpoints, backed by Redis."""

import hashlib
import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request, status

from linkbio.config import settings

logger = logging.getLogger(__name__)


def client_identifier(request: Request) -> str:
    """
    Best-effort client IP.

    Uses the rightmost ``X-Forwarded-For`` entry (appended by our own proxy);
    earlier entries are client supplied.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ips = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        if ips:
            return ips[-1]
    return request.client.host if request.client else "unknown"


class RateLimitService:
    """Counts requests per client and endpoint in Redis."""

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url or settings.REDIS_URL
        self.redis_client: Optional[redis.Redis] = None

    async def get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self._redis_url, encoding="utf-8", decode_responses=True
            )
        return self.redis_client

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    @staticmethod
    def _key(identifier: str, endpoint: str) -> str:
        # Hash to normalize key length, not for secrecy
        digest = hashlib.md5(f"{identifier}:{endpoint}".encode(), usedforsecurity=False).hexdigest()  # nosec B324
        return f"rate_limit:{digest}"

    async def check_rate_limit(
        self,
        request: Request,
        max_requests: int = 10,
        window_seconds: int = 60,
        identifier: Optional[str] = None,
    ) -> None:
        """
        Count this request and reject it once the window is full.

        Skipped in development and when no client address is known. Redis
        outages fail open.

        Raises:
            HTTPException: 429 with ``Retry-After`` when the limit is exceeded
        """
        if settings.ENVIRONMENT == "development":
            return

        identifier = identifier or client_identifier(request)
        if identifier == "unknown":
            return

        key = self._key(identifier, request.url.path)
        try:
            client = await self.get_redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, window_seconds, nx=True)
                pipe.ttl(key)
                count, _, ttl = await pipe.execute()
        except redis.RedisError as e:
            logger.warning("Rate limit check failed (fail-open): %s", e)
            return

        if count > max_requests:
            retry_after = max(int(ttl), 1)
            logger.warning("Rate limit exceeded on %s", request.url.path)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(retry_after)},
            )


# Singleton instance
_rate_limit_service: Optional[RateLimitService] = None


def get_rate_limit_service() -> RateLimitService:
    """Get or create rate limit service singleton."""
    global _rate_limit_service
    if _rate_limit_service is None:
        _rate_limit_service = RateLimitService()
    return _rate_limit_service
