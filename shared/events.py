"""
shared/events.py
Domain events emitted by BookingLifecycle and PaymentOrchestrator, and the
in-process bus that hands them to subscribers (NotificationDispatcher,
refund reconciliation).

Events for one booking reach subscribers in emission order; each event gets
a per-booking sequence number on publish. Nothing is guaranteed across bookings.
Only the most recently active bookings keep a counter; a booking evicted from
that window starts again at 1.
"""

import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.locks import BookingLockRegistry
from shared.models.models import Booking, EventType
from shared.schemas.schemas import ErrorInfo

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Recipient(BaseModel):
    """Who a booking's notifications go to, resolved when the event is built."""
    user_id: uuid.UUID
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EventType
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    booking_id: uuid.UUID
    booking_reference: str
    recipient: Recipient
    scheduled_date: Optional[datetime] = None
    resource_type: Optional[str] = None
    occurred_at: datetime = Field(default_factory=_utcnow)
    sequence: int = 0

    @property
    def user_id(self) -> uuid.UUID:
        return self.recipient.user_id

    @classmethod
    def for_booking(cls, booking: Booking, **fields: Any) -> "DomainEvent":
        recipient = Recipient(
            user_id=booking.user_id,
            name=booking.patient_name,
            email=booking.contact_email,
            phone=booking.contact_phone,
            push_token=booking.device_token,
        )
        resource_type = booking.resource_type
        return cls(
            booking_id=booking.id,
            booking_reference=booking.booking_reference,
            recipient=recipient,
            scheduled_date=booking.scheduled_date,
            resource_type=getattr(resource_type, "value", resource_type),
            **fields,
        )

    def template_vars(self) -> dict[str, Any]:
        """Values available to notification templates."""
        data = self.model_dump(exclude={"recipient", "event_id", "sequence", "type", "error"})
        data["patient_name"] = self.recipient.name or "Patient"
        data["resource"] = (self.resource_type or "resource").replace("_", " ")
        data["scheduled_date"] = (
            self.scheduled_date.strftime("%d %b %Y, %H:%M") if self.scheduled_date else "the scheduled date"
        )
        return data


class BookingApproved(DomainEvent):
    type: Literal[EventType.BOOKING_APPROVED] = EventType.BOOKING_APPROVED


class BookingDeclined(DomainEvent):
    type: Literal[EventType.BOOKING_DECLINED] = EventType.BOOKING_DECLINED
    reason: str


class BookingCompleted(DomainEvent):
    type: Literal[EventType.BOOKING_COMPLETED] = EventType.BOOKING_COMPLETED


class BookingCancelled(DomainEvent):
    type: Literal[EventType.BOOKING_CANCELLED] = EventType.BOOKING_CANCELLED
    reason: str
    refund_requested: bool = False


class RefundProcessed(DomainEvent):
    type: Literal[EventType.REFUND_PROCESSED] = EventType.REFUND_PROCESSED
    refund_amount: Decimal
    tier: int
    refund_id: Optional[str] = None


class RefundFailed(DomainEvent):
    """Cancellation stood; the refund needs follow-up."""
    type: Literal[EventType.REFUND_FAILED] = EventType.REFUND_FAILED
    payment_id: Optional[uuid.UUID] = None
    refund_amount: Decimal
    reason: str
    error: ErrorInfo


class PaymentConfirmed(DomainEvent):
    type: Literal[EventType.PAYMENT_CONFIRMED] = EventType.PAYMENT_CONFIRMED
    amount: Decimal
    transaction_id: Optional[str] = None
    purpose: str = "charge"


class PaymentFailed(DomainEvent):
    type: Literal[EventType.PAYMENT_FAILED] = EventType.PAYMENT_FAILED
    amount: Decimal
    error: ErrorInfo
    retry_count: int
    retry_available: bool
    purpose: str = "charge"


Handler = Callable[[DomainEvent], Awaitable[Any]]


class EventBus:
    """
    Awaits subscribers one after another, in subscription order.
    A failing subscriber is logged and skipped; it never fails the publisher.
    """

    def __init__(self, max_tracked_bookings: int = 10_000):
        self._handlers: list[tuple[Optional[frozenset[EventType]], Handler]] = []
        self._sequences: OrderedDict[str, int] = OrderedDict()
        self.max_tracked_bookings = max_tracked_bookings
        self._ordering = BookingLockRegistry()

    def subscribe(self, handler: Handler, event_types: Optional[Iterable[EventType]] = None) -> None:
        types = frozenset(event_types) if event_types is not None else None
        self._handlers.append((types, handler))

    async def publish(self, event: DomainEvent) -> DomainEvent:
        async with self._ordering.hold(event.booking_id):
            event = event.model_copy(update={"sequence": self._next_sequence(event.booking_id)})
            for types, handler in self._handlers:
                if types is not None and event.type not in types:
                    continue
                try:
                    await handler(event)
                except Exception:
                    logger.exception(
                        f"Event handler {getattr(handler, '__qualname__', handler)!s} failed "
                        f"for {event.type.value} on booking {event.booking_id}"
                    )
        return event

    async def publish_all(self, events: Iterable[DomainEvent]) -> list[DomainEvent]:
        return [await self.publish(event) for event in events]

    def _next_sequence(self, booking_id) -> int:
        key = str(booking_id)
        sequence = self._sequences.pop(key, 0) + 1
        self._sequences[key] = sequence
        while len(self._sequences) > self.max_tracked_bookings:
            self._sequences.popitem(last=False)
        return sequence
