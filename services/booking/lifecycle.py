"""
services/booking/lifecycle.py
Booking status transitions and the cancellation/refund flow.
States: PENDING → APPROVED | DECLINED | CANCELLED
        APPROVED → COMPLETED | CANCELLED
DECLINED, COMPLETED and CANCELLED are terminal.

A cancellation is committed before any refund is attempted. If the refund
then fails the booking stays CANCELLED and the failure is reported on its
own (result.refund_error + a RefundFailed event) for manual reconciliation.

A booking whose charge is still processing cannot be cancelled or declined;
the caller gets PAYMENT_IN_PROGRESS and tries again once the charge settles.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from config.settings import settings
from services.booking.repository import BookingStore
from services.errors.classifier import ErrorClassifier
from services.payment.gateway import PaymentGateway
from services.refund.policy import RefundPolicyEngine
from shared.events import (
    BookingApproved,
    BookingCancelled,
    BookingCompleted,
    BookingDeclined,
    DomainEvent,
    EventBus,
    RefundFailed,
    RefundProcessed,
)
from shared.exceptions import (
    BookingCoreError,
    InvalidStateError,
    PaymentGatewayError,
    ValidationError,
)
from shared.locks import BookingLock, BookingLockRegistry
from shared.models.models import Booking, BookingAuditLog, BookingStatus, PaymentStatus
from shared.results import CancellationResult, LifecycleResult
from shared.schemas.schemas import RefundDecision

logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.APPROVED, BookingStatus.DECLINED, BookingStatus.CANCELLED},
    BookingStatus.APPROVED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
}

TERMINAL_STATUSES = {BookingStatus.DECLINED, BookingStatus.COMPLETED, BookingStatus.CANCELLED}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in _ALLOWED_TRANSITIONS.get(BookingStatus(current), set())


def refund_reason(reason: str) -> str:
    return f"Booking cancellation: {reason}"


class BookingLifecycle:

    def __init__(
        self,
        store: BookingStore,
        gateway: PaymentGateway,
        refund_engine: Optional[RefundPolicyEngine] = None,
        classifier: Optional[ErrorClassifier] = None,
        bus: Optional[EventBus] = None,
        locks: Optional[BookingLock] = None,
        refund_timeout: float = settings.PAYMENT_PROCESS_TIMEOUT_SECONDS,
        payments=None,
    ):
        self.store = store
        self.gateway = gateway
        self.refund_engine = refund_engine or RefundPolicyEngine()
        self.classifier = classifier or ErrorClassifier()
        self.bus = bus
        self.locks = locks or BookingLockRegistry()
        self.refund_timeout = refund_timeout
        # anything with is_processing(booking_id), normally the PaymentOrchestrator
        self.payments = payments

    # ── Operator decisions ────────────────────────────────────

    async def approve(self, booking: Booking, actor: Optional[str] = None) -> LifecycleResult:
        async with self.locks.hold(booking.id):
            try:
                self._check_transition(booking, BookingStatus.APPROVED)
                previous = await self._commit(booking, BookingStatus.APPROVED, actor, approved_at=self._now())
            except BookingCoreError as e:
                return self._failed(LifecycleResult, booking, e)

            event = BookingApproved.for_booking(booking)
            event = await self._publish(event)
            logger.info(f"Booking {booking.booking_reference} approved ({previous.value} → approved)")
            return LifecycleResult(ok=True, booking=booking, events=[event])

    async def decline(self, booking: Booking, reason: str, actor: Optional[str] = None) -> LifecycleResult:
        async with self.locks.hold(booking.id):
            try:
                self._check_transition(booking, BookingStatus.DECLINED)
                self._check_no_charge_in_flight(booking)
                reason = self._require_reason(reason, "A reason is required to decline a booking")
                await self._commit(booking, BookingStatus.DECLINED, actor, reason=reason, decline_reason=reason)
            except BookingCoreError as e:
                return self._failed(LifecycleResult, booking, e)

            event = BookingDeclined.for_booking(booking, reason=reason)
            event = await self._publish(event)
            logger.info(f"Booking {booking.booking_reference} declined: {reason}")
            return LifecycleResult(ok=True, booking=booking, events=[event])

    async def complete(self, booking: Booking, actor: Optional[str] = None) -> LifecycleResult:
        async with self.locks.hold(booking.id):
            try:
                self._check_transition(booking, BookingStatus.COMPLETED)
                await self._commit(booking, BookingStatus.COMPLETED, actor, completed_at=self._now())
            except BookingCoreError as e:
                return self._failed(LifecycleResult, booking, e)

            event = BookingCompleted.for_booking(booking)
            event = await self._publish(event)
            logger.info(f"Booking {booking.booking_reference} completed")
            return LifecycleResult(ok=True, booking=booking, events=[event])

    # ── Cancellation ──────────────────────────────────────────

    def refund_quote(self, booking: Booking, now: Optional[datetime] = None) -> RefundDecision:
        """What cancelling right now would refund. Read-only."""
        payment = booking.payment
        return self.refund_engine.decide(
            scheduled_date=booking.scheduled_date,
            now=now or self._now(),
            paid_amount=payment.amount if payment else Decimal("0"),
            payment_status=payment.status if payment else None,
        )

    async def cancel(
        self,
        booking: Booking,
        reason: str,
        request_refund: bool,
        actor: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        now = now or self._now()

        async with self.locks.hold(booking.id):
            try:
                self._check_transition(booking, BookingStatus.CANCELLED)
                self._check_no_charge_in_flight(booking)
                reason = self._require_reason(reason, "A cancellation reason is required")
                await self._commit(
                    booking,
                    BookingStatus.CANCELLED,
                    actor,
                    reason=reason,
                    extra={"request_refund": request_refund},
                    cancellation_reason=reason,
                    cancelled_at=now,
                )
            except BookingCoreError as e:
                return self._failed(CancellationResult, booking, e)

            logger.info(f"Booking {booking.booking_reference} cancelled: {reason}")
            cancelled = BookingCancelled.for_booking(booking, reason=reason, refund_requested=request_refund)
            cancelled = await self._publish(cancelled)
            result = CancellationResult(ok=True, booking=booking, events=[cancelled])

            payment = booking.payment
            if not request_refund or payment is None or payment.status != PaymentStatus.PAID:
                return result

            decision = self.refund_engine.decide(booking.scheduled_date, now, payment.amount, payment.status)
            result.refund_decision = decision
            if decision.refund_amount <= 0:
                logger.info(
                    f"No refund due for booking {booking.booking_reference} "
                    f"({decision.hours_until:.1f}h before scheduled date)"
                )
                return result

            event = await self._refund(booking, decision, reason, result)
            event = await self._publish(event)
            result.events.append(event)
            return result

    async def _refund(
        self,
        booking: Booking,
        decision: RefundDecision,
        reason: str,
        result: CancellationResult,
    ) -> DomainEvent:
        payment = booking.payment
        failure: Optional[Exception] = None
        outcome = None
        try:
            if not payment.transaction_id:
                raise ValidationError(
                    "Payment has no transaction reference to refund against", field="transaction_id"
                )
            outcome = await asyncio.wait_for(
                self.gateway.process_refund(payment.transaction_id, decision.refund_amount, refund_reason(reason)),
                timeout=self.refund_timeout,
            )
            if not outcome.success:
                failure = outcome.error or PaymentGatewayError("Refund rejected by gateway")
        except Exception as e:
            failure = e

        if failure is None:
            payment.status = PaymentStatus.REFUNDED
            payment.refund_id = outcome.transaction_id
            payment.refund_amount = decision.refund_amount
            payment.refunded_at = self._now()
            payment.last_error = None
            await self.store.save(booking)
            result.refund_processed = True
            logger.info(
                f"Refund of {decision.refund_amount} ({decision.tier}%) processed for booking {booking.booking_reference}"
            )
            return RefundProcessed.for_booking(
                booking,
                refund_amount=decision.refund_amount,
                tier=decision.tier,
                refund_id=outcome.transaction_id,
            )

        info = self.classifier.classify(failure)
        result.refund_error = info
        payment.last_error = info.message
        await self.store.save(booking)
        logger.warning(
            f"Refund of {decision.refund_amount} failed for cancelled booking {booking.booking_reference}; "
            f"needs reconciliation: {info.message}"
        )
        return RefundFailed.for_booking(
            booking,
            payment_id=payment.id,
            refund_amount=decision.refund_amount,
            reason=refund_reason(reason),
            error=info,
        )

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _check_transition(booking: Booking, target: BookingStatus) -> None:
        current = BookingStatus(booking.status)
        if not can_transition(current, target):
            raise InvalidStateError(
                f"Booking in '{current.value}' state cannot be {target.value}",
                current=current.value,
            )

    def _check_no_charge_in_flight(self, booking: Booking) -> None:
        if self.payments is not None and self.payments.is_processing(booking.id):
            raise InvalidStateError(
                f"Booking {booking.booking_reference} has a payment processing",
                current=BookingStatus(booking.status).value,
                code="PAYMENT_IN_PROGRESS",
                user_message="A payment for this booking is still processing. Please try again in a moment.",
            )

    @staticmethod
    def _require_reason(reason: Optional[str], message: str) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(message, field="reason")
        return reason

    async def _commit(
        self,
        booking: Booking,
        target: BookingStatus,
        actor: Optional[str],
        reason: Optional[str] = None,
        extra: Optional[dict] = None,
        **fields,
    ) -> BookingStatus:
        previous = BookingStatus(booking.status)
        booking.status = target
        for name, value in fields.items():
            setattr(booking, name, value)
        audit = BookingAuditLog(
            booking_id=booking.id,
            from_status=previous.value,
            to_status=target.value,
            changed_by=actor,
            reason=reason,
            extra=extra,
        )
        await self.store.save(booking, audit)
        return previous

    def _failed(self, result_cls, booking: Booking, exc: BookingCoreError):
        return result_cls(ok=False, booking=booking, error=self.classifier.classify(exc), exception=exc)

    async def _publish(self, event: DomainEvent) -> DomainEvent:
        if self.bus is not None:
            return await self.bus.publish(event)
        return event
