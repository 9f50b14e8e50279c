"""Redis client factory — used for webhook event de-duplication only.

NOT used for transaction state (the Postgres ledger is the source of truth).
"""

import redis.asyncio as aioredis

from config.settings import settings

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Get or create the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool  # noqa: PLW0603
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None


async def claim_once(redis: aioredis.Redis, key: str, ttl_seconds: int) -> bool:
    """SET NX with expiry. True only for the first caller within the TTL."""
    return bool(await redis.set(key, "1", nx=True, ex=ttl_seconds))


async def release_claim(redis: aioredis.Redis, key: str) -> None:
    """Forget a claim so a failed delivery can be processed on redelivery."""
    await redis.delete(key)
