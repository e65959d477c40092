"""
services/dependencies.py
Process-wide service instances and the FastAPI providers that hand them out.

Everything that keeps in-memory state across requests (event bus, booking
locks, payment sessions, pollers) is a singleton here. Per-request pieces
(booking store, lifecycle) are built on top of the request's DB session.
Tests swap any of these through app.dependency_overrides.
"""

import logging
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from config.database import get_db, get_session_factory
from config.redis_client import RedisBookingLock, get_redis
from config.settings import settings
from services.booking.lifecycle import BookingLifecycle
from services.booking.repository import BookingStore, SqlBookingStore
from services.errors.classifier import ErrorClassifier
from services.notification.dispatcher import NotificationDispatcher
from services.notification.inbox import NotificationInbox, SqlNotificationStore
from services.notification.poller import PollerRegistry
from services.notification.preferences import PreferenceService, SqlPreferenceStore
from services.payment.gateway import RazorpayGateway
from services.payment.orchestrator import PaymentOrchestrator
from services.refund.policy import RefundPolicyEngine
from shared.events import EventBus, RefundFailed
from shared.locks import BookingLock, BookingLockRegistry
from shared.models.models import EventType

logger = logging.getLogger(__name__)


# ── Singletons ────────────────────────────────────────────────

@lru_cache()
def get_event_bus() -> EventBus:
    return EventBus()


@lru_cache()
def get_booking_locks() -> BookingLock:
    if settings.BOOKING_LOCK_BACKEND == "redis":
        return RedisBookingLock(get_redis())
    return BookingLockRegistry()


@lru_cache()
def get_classifier() -> ErrorClassifier:
    return ErrorClassifier()


@lru_cache()
def get_refund_engine() -> RefundPolicyEngine:
    return RefundPolicyEngine()


@lru_cache()
def get_gateway() -> RazorpayGateway:
    return RazorpayGateway()


@lru_cache()
def get_orchestrator() -> PaymentOrchestrator:
    return PaymentOrchestrator(
        gateway=get_gateway(),
        classifier=get_classifier(),
        bus=get_event_bus(),
        locks=get_booking_locks(),
    )


@lru_cache()
def get_preference_service() -> PreferenceService:
    return PreferenceService(SqlPreferenceStore(get_session_factory()))


@lru_cache()
def get_inbox() -> NotificationInbox:
    return NotificationInbox(SqlNotificationStore(get_session_factory()))


@lru_cache()
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(get_inbox().store, preferences=get_preference_service())


@lru_cache()
def get_poller_registry() -> PollerRegistry:
    return PollerRegistry(get_inbox())


# ── Event wiring ──────────────────────────────────────────────

async def enqueue_refund_reconciliation(event: RefundFailed) -> None:
    """RefundFailed subscriber: hand retryable refund failures to Celery."""
    if not event.error.retryable or event.payment_id is None:
        logger.info(
            f"Refund for booking {event.booking_reference} needs manual reconciliation "
            f"({event.error.type.value}): {event.error.message}"
        )
        return
    from tasks.payment_tasks import enqueue_refund_reconciliation as enqueue

    await run_in_threadpool(enqueue, event.payment_id, event.refund_amount, event.reason)
    logger.info(f"Refund reconciliation queued for booking {event.booking_reference}")


def wire_subscribers(bus: EventBus, dispatcher: NotificationDispatcher) -> None:
    """Called once at startup. Notifications first, then reconciliation."""
    bus.subscribe(dispatcher.handle)
    if settings.REFUND_AUTO_RECONCILE:
        bus.subscribe(enqueue_refund_reconciliation, [EventType.REFUND_FAILED])


# ── Request-scoped providers ──────────────────────────────────

def get_booking_store(db: AsyncSession = Depends(get_db)) -> BookingStore:
    return SqlBookingStore(db)


def get_lifecycle(
    store: BookingStore = Depends(get_booking_store),
    gateway=Depends(get_gateway),
    classifier: ErrorClassifier = Depends(get_classifier),
    bus: EventBus = Depends(get_event_bus),
    locks: BookingLock = Depends(get_booking_locks),
    payments: PaymentOrchestrator = Depends(get_orchestrator),
) -> BookingLifecycle:
    return BookingLifecycle(
        store=store,
        gateway=gateway,
        refund_engine=get_refund_engine(),
        classifier=classifier,
        bus=bus,
        locks=locks,
        payments=payments,
    )
