"""
shared/locks.py
In-process per-booking serialization.

Every state-mutating lifecycle or payment operation on a booking runs inside
`hold(booking_id)`. Single-instance deployments use BookingLockRegistry;
multi-instance deployments swap in config.redis_client.RedisBookingLock.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol


class BookingLock(Protocol):
    def hold(self, booking_id): ...


class BookingLockRegistry:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, booking_id) -> AsyncIterator[None]:
        key = str(booking_id)
        self._waiters[key] += 1
        try:
            async with self._locks[key]:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Drop idle locks so the registry doesn't grow with every booking seen.
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_locked(self, booking_id) -> bool:
        lock = self._locks.get(str(booking_id))
        return bool(lock and lock.locked())
