"""
services/booking/repository.py
Booking persistence used by BookingLifecycle.

`save()` is the commit point: once it returns, a status change is durable
and will not be rolled back by anything that happens afterwards.
"""

import uuid
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.exceptions import BookingNotFoundError
from shared.models.models import Booking, BookingAuditLog


class BookingStore(Protocol):
    async def get(self, booking_id) -> Booking: ...

    async def save(self, booking: Booking, audit: Optional[BookingAuditLog] = None) -> None: ...


class SqlBookingStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, booking_id) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .options(selectinload(Booking.payment))
            .where(Booking.id == uuid.UUID(str(booking_id)))
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    async def save(self, booking: Booking, audit: Optional[BookingAuditLog] = None) -> None:
        self.db.add(booking)
        if audit is not None:
            self.db.add(audit)
        await self.db.commit()


class InMemoryBookingStore:
    """Dict-backed store for single-process hosting and tests."""

    def __init__(self, bookings: Optional[list[Booking]] = None):
        self.bookings: dict[str, Booking] = {str(b.id): b for b in bookings or []}
        self.audit_logs: list[BookingAuditLog] = []
        self.saves = 0

    def add(self, booking: Booking) -> Booking:
        self.bookings[str(booking.id)] = booking
        return booking

    async def get(self, booking_id) -> Booking:
        booking = self.bookings.get(str(booking_id))
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    async def save(self, booking: Booking, audit: Optional[BookingAuditLog] = None) -> None:
        self.bookings[str(booking.id)] = booking
        if audit is not None:
            self.audit_logs.append(audit)
        self.saves += 1
