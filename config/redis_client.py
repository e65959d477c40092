"""
config/redis_client.py
Async Redis client for per-booking locking and rate limiting.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import redis.asyncio as aioredis

from config.settings import settings
from shared.exceptions import BookingBusyError


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


def get_redis() -> aioredis.Redis:
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# Delete the key only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


# ── Booking Locking ───────────────────────────────────────────
class RedisBookingLock:
    """
    Cross-instance mutex for booking mutations, built on SET NX.
    Same `hold()` interface as shared.locks.BookingLockRegistry.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        ttl: int = settings.REDIS_BOOKING_LOCK_TTL,
        wait_seconds: float = settings.REDIS_LOCK_WAIT_SECONDS,
        poll_interval: float = 0.1,
    ):
        self.client = client
        self.ttl = ttl
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval

    @staticmethod
    def _key(booking_id) -> str:
        return f"booking_lock:{booking_id}"

    async def acquire(self, booking_id) -> Optional[str]:
        """
        Atomic lock using SET NX (set if not exists).
        Returns the owner token, or None if the lock is held elsewhere.
        """
        token = uuid.uuid4().hex
        result = await self.client.set(self._key(booking_id), token, ex=self.ttl, nx=True)
        return token if result else None

    async def release(self, booking_id, token: str) -> None:
        await self.client.eval(_RELEASE_SCRIPT, 1, self._key(booking_id), token)

    @asynccontextmanager
    async def hold(self, booking_id) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        token = await self.acquire(booking_id)
        while token is None:
            if loop.time() >= deadline:
                raise BookingBusyError(str(booking_id))
            await asyncio.sleep(self.poll_interval)
            token = await self.acquire(booking_id)
        try:
            yield
        finally:
            await self.release(booking_id, token)
