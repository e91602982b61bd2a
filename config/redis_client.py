"""
config/redis_client.py
Async Redis client for rate limiting and advisory locks
around the scheduled sweeps.
"""

import uuid
from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


# ── Helpers ───────────────────────────────────────────────────
class RedisCache:
    """Thin wrapper over the shared client for locks and rate limits."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Advisory Locks ───────────────────────────────────────
    async def acquire_lock(self, name: str, ttl: int = settings.SWEEP_LOCK_TTL_SECONDS) -> Optional[str]:
        """
        Atomic lock using SET NX (set if not exists).
        Returns the lock token if acquired, None if another holder owns it.
        """
        token = str(uuid.uuid4())
        result = await self.client.set(f"lock:{name}", token, ex=ttl, nx=True)
        return token if result else None

    async def release_lock(self, name: str, token: str) -> None:
        """Release only if we still own the lock (it may have expired and been retaken)."""
        key = f"lock:{name}"
        if await self.client.get(key) == token:
            await self.client.delete(key)

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Sliding window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
