"""
Redis client wrapper.

Responsibilities:
  • Presort dedupe keys — STRING keyed by presort:pending:{user_id}
                          set with NX + EX so a user's refresh is enqueued
                          at most once per dedupe window

The request path acquires the key before publishing a refresh; the presort
worker releases it once the job for that user has finished.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from feedpresort.config import settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None

PRESORT_PENDING_KEY = "presort:pending:{user_id}"


async def init_redis() -> None:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialised — call init_redis() at startup")
    return _redis


# ─────────────────────── Presort dedupe keys ──────────────────────────────

async def acquire_presort_slot(
    user_id: str,
    ttl_seconds: Optional[int] = None,
    redis: Optional[aioredis.Redis] = None,
) -> bool:
    """
    Claim the pending-refresh key for `user_id`.
    Returns False when a refresh is already queued inside the window.
    """
    r = redis or get_redis()
    ttl = ttl_seconds or settings.presort_dedupe_ttl_seconds
    acquired = await r.set(PRESORT_PENDING_KEY.format(user_id=user_id), "1", nx=True, ex=ttl)
    return bool(acquired)


async def release_presort_slot(user_id: str, redis: Optional[aioredis.Redis] = None) -> None:
    r = redis or get_redis()
    await r.delete(PRESORT_PENDING_KEY.format(user_id=user_id))
