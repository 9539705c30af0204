"""Fixed-window rate limiting for /checkout/verify, state kept in Redis."""

import logging

import redis
from fastapi import Request

from shared.errors import RateLimited

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop behind a proxy."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """At most `limit` hits per key in each `window_seconds` window."""

    def __init__(self, client: redis.Redis, limit: int = 100, window_seconds: int = 900, prefix: str = "ratelimit"):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def hit(self, key: str) -> int:
        """Count one request and raise RateLimited once the window is full."""
        redis_key = f"{self.prefix}:{key}"
        count = self.client.incr(redis_key)
        if count == 1:
            self.client.expire(redis_key, self.window_seconds)

        if count > self.limit:
            logger.warning(f"Rate limit exceeded for {key}: {count}/{self.limit}")
            raise RateLimited("Too many requests, please try again later")
        return count

    def reset(self, key: str) -> None:
        self.client.delete(f"{self.prefix}:{key}")


def create_redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)
