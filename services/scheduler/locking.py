"""
services/scheduler/locking.py
Redis advisory lock around a scheduled job so only one instance runs it.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis

import config.redis_client as redis_module
from config.redis_client import RedisCache
from config.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobSkipped(Exception):
    """Another instance holds the lock for this job."""


async def run_with_lock(
    name: str,
    job: Callable[[], Awaitable[T]],
    client: Optional[aioredis.Redis] = None,
    ttl: Optional[int] = None,
) -> T:
    client = client or redis_module.redis_client
    if client is None:
        logger.warning(f"Redis unavailable, running '{name}' without a lock")
        return await job()

    cache = RedisCache(client)
    token = await cache.acquire_lock(name, ttl or settings.SWEEP_LOCK_TTL_SECONDS)
    if token is None:
        logger.info(f"Job '{name}' is already running elsewhere, skipping")
        raise JobSkipped(name)
    try:
        return await job()
    finally:
        await cache.release_lock(name, token)
