from __future__ import annotations

import math
from datetime import datetime, timezone

import redis.asyncio as aioredis

from sessionguard.clock import ensure_utc


class RedisCache:
    """Thin Redis wrapper for revoked-token keys.

    Entries are written with a native TTL so Redis evicts them on its own;
    callers never sweep the primary.
    """

    KEY_PREFIX = "auth:revoked:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_seconds(expires_at: datetime, now: datetime | None = None) -> int:
        """Whole seconds until ``expires_at``, rounded up and clamped to 1.

        Redis rejects zero or negative expiries.
        """

        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        remaining = (ensure_utc(expires_at) - now).total_seconds()
        return max(1, math.ceil(remaining))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def mark_revoked(self, token_key: str, ttl_seconds: int) -> None:
        await self.client.set(f"{self.KEY_PREFIX}{token_key}", "1", ex=ttl_seconds)

    async def is_revoked(self, token_key: str) -> bool:
        return bool(await self.client.exists(f"{self.KEY_PREFIX}{token_key}"))

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
