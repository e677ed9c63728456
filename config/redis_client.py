"""
config/redis_client.py
Async Redis client for caching, per-booking write locks and the JWT deny-list.
"""

import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import redis.asyncio as aioredis
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_delay,
    wait_exponential,
)

from config.settings import settings
from shared.utils.errors import BookingBusy

logger = logging.getLogger(__name__)


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


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    # ── Booking Write Locks ──────────────────────────────────
    async def try_lock_booking(self, booking_id: str, token: str) -> bool:
        """
        Atomic per-booking lock using SET NX (set if not exists).
        Returns True if lock acquired, False if another writer holds it.
        """
        result = await self.client.set(
            f"booking_lock:{booking_id}",
            token,
            px=settings.BOOKING_LOCK_TTL_SECONDS * 1000,
            nx=True,
        )
        return bool(result)

    async def release_booking(self, booking_id: str, token: str) -> None:
        """Release the lock only if we still own it (TTL may have handed it to someone else)."""
        key = f"booking_lock:{booking_id}"
        if await self.client.get(key) == token:
            await self.client.delete(key)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1


@asynccontextmanager
async def booking_lock(client: aioredis.Redis, booking_id) -> AsyncIterator[str]:
    """
    Serialise writers of a single booking across all API instances and workers.

    Waits at most BOOKING_LOCK_WAIT_SECONDS for the lock, then raises BookingBusy.
    """
    cache = RedisCache(client)
    token = secrets.token_hex(16)
    key = str(booking_id)

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_delay(settings.BOOKING_LOCK_WAIT_SECONDS),
            wait=wait_exponential(multiplier=0.02, max=0.5),
            retry=retry_if_result(lambda acquired: not acquired),
        ):
            with attempt:
                acquired = await cache.try_lock_booking(key, token)
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(acquired)
    except RetryError:
        logger.warning(f"Booking {key} is locked by another writer, giving up")
        raise BookingBusy("Booking is being updated by another request. Please retry.", booking_id=key)

    try:
        yield token
    finally:
        await cache.release_booking(key, token)
