"""
services/payment/orchestrator.py
Per-booking payment state machine with bounded retry and backoff.

    SUMMARY ──proceed──▶ PAYMENT ──submit──▶ PROCESSING ──▶ CONFIRMED
       ▲                  │  ▲                  │
       └──────back────────┘  └────cancel────────┤
                             ▲                  ▼
                             └─────retry─────  FAILED ──(3rd failure)──▶ FAILED_EXHAUSTED

CONFIRMED and FAILED_EXHAUSTED are final for that attempt, and so is a FAILED
attempt with no retry on offer; begin() opens a fresh attempt with a clean
retry budget. Sessions left idle for PAYMENT_SESSION_TTL_SECONDS are evicted.

Only one PROCESSING attempt per booking: a submit that finds the session
already processing is rejected, not queued. The booking lock is held for
state transitions only, never across the gateway call. Submit re-checks that
the booking is still pending or approved, and BookingLifecycle refuses to
close a booking while its charge is processing.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from config.settings import settings
from services.errors.classifier import ErrorClassifier
from services.payment.gateway import GatewayResult, PaymentGateway
from shared.events import EventBus, PaymentConfirmed, PaymentFailed, RefundFailed
from shared.exceptions import (
    InvalidStateError,
    PaymentGatewayError,
    RetryExhaustedError,
    RetryNotReadyError,
    ValidationError,
)
from shared.locks import BookingLock, BookingLockRegistry
from shared.models.models import Booking, BookingStatus, PaymentStatus
from shared.results import SessionResult
from shared.schemas.schemas import ErrorInfo, PaymentData

logger = logging.getLogger(__name__)


class CheckoutState(str, PyEnum):
    SUMMARY = "summary"
    PAYMENT = "payment"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    FAILED_EXHAUSTED = "failed_exhausted"


class PaymentPurpose(str, PyEnum):
    CHARGE = "charge"
    REFUND = "refund"


_TRANSITIONS: dict[CheckoutState, set[CheckoutState]] = {
    CheckoutState.SUMMARY: {CheckoutState.PAYMENT},
    CheckoutState.PAYMENT: {CheckoutState.SUMMARY, CheckoutState.PROCESSING},
    CheckoutState.PROCESSING: {
        CheckoutState.PAYMENT,
        CheckoutState.CONFIRMED,
        CheckoutState.FAILED,
        CheckoutState.FAILED_EXHAUSTED,
    },
    CheckoutState.FAILED: {CheckoutState.PAYMENT},
}

_FINAL_STATES = {CheckoutState.CONFIRMED, CheckoutState.FAILED_EXHAUSTED}

PAYABLE_STATUSES = {BookingStatus.PENDING, BookingStatus.APPROVED}


@dataclass
class PaymentSession:
    booking_id: uuid.UUID
    purpose: PaymentPurpose
    amount: Decimal
    attempt_id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: CheckoutState = CheckoutState.SUMMARY
    retry_count: int = 0
    next_retry_in: int = 0
    retry_available: bool = False
    last_error: Optional[ErrorInfo] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    countdown_task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    inflight_task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)
    updated_at: float = field(default_factory=time.monotonic, repr=False, compare=False)

    @property
    def is_final(self) -> bool:
        if self.state == CheckoutState.FAILED and not self.retry_available:
            return True
        return self.state in _FINAL_STATES


class PaymentOrchestrator:

    def __init__(
        self,
        gateway: PaymentGateway,
        classifier: Optional[ErrorClassifier] = None,
        bus: Optional[EventBus] = None,
        locks: Optional[BookingLock] = None,
        max_attempts: int = settings.PAYMENT_MAX_ATTEMPTS,
        base_delay: int = settings.PAYMENT_RETRY_BASE_DELAY_SECONDS,
        timeout: float = settings.PAYMENT_PROCESS_TIMEOUT_SECONDS,
        auto_countdown: bool = True,
        session_ttl: float = settings.PAYMENT_SESSION_TTL_SECONDS,
    ):
        self.gateway = gateway
        self.classifier = classifier or ErrorClassifier()
        self.bus = bus
        self.locks = locks or BookingLockRegistry()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.auto_countdown = auto_countdown
        self.session_ttl = session_ttl
        self._sessions: dict[str, PaymentSession] = {}

    # ── Queries ───────────────────────────────────────────────

    def get_session(self, booking_id) -> Optional[PaymentSession]:
        return self._sessions.get(str(booking_id))

    def is_processing(self, booking_id) -> bool:
        session = self.get_session(booking_id)
        return session is not None and session.state == CheckoutState.PROCESSING

    def backoff_for(self, retry_count: int) -> int:
        return self.base_delay * 2 ** max(retry_count - 1, 0)

    # ── Session lifecycle ─────────────────────────────────────

    async def begin(
        self,
        booking: Booking,
        purpose: PaymentPurpose = PaymentPurpose.CHARGE,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> SessionResult:
        """Open (or resume) the payment attempt for a booking."""
        self.evict_expired()
        async with self.locks.hold(booking.id):
            purpose = PaymentPurpose(purpose)
            try:
                amount = self._check_can_begin(booking, purpose, amount)
            except (InvalidStateError, ValidationError) as e:
                return self._rejected(e, self.get_session(booking.id))

            current = self.get_session(booking.id)
            if current is not None and current.state == CheckoutState.PROCESSING:
                return self._rejected(
                    InvalidStateError("A payment attempt is already processing", current=current.state.value),
                    current,
                )
            if current is not None and not current.is_final and current.purpose == purpose:
                return SessionResult(ok=True, session=current)

            if current is not None:
                self._stop_countdown(current)
            session = PaymentSession(
                booking_id=booking.id,
                purpose=purpose,
                amount=amount,
                reason=reason,
            )
            self._sessions[str(booking.id)] = session
            logger.info(
                f"Payment attempt {session.attempt_id} ({purpose.value}, {amount}) opened for booking {booking.id}"
            )
            return SessionResult(ok=True, session=session)

    def _check_can_begin(self, booking: Booking, purpose: PaymentPurpose, amount: Optional[Decimal]) -> Decimal:
        payment = booking.payment
        if payment is None:
            raise InvalidStateError(f"Booking {booking.id} has no payment attached")

        if purpose == PaymentPurpose.CHARGE:
            if booking.status not in PAYABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot take payment for a {BookingStatus(booking.status).value} booking",
                    current=BookingStatus(booking.status).value,
                )
            if payment.status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
                raise InvalidStateError("Payment already completed", current=PaymentStatus(payment.status).value)
            return Decimal(payment.amount)

        if payment.status != PaymentStatus.PAID:
            raise InvalidStateError(
                "Only a paid booking can be refunded", current=PaymentStatus(payment.status).value
            )
        refund_amount = Decimal(amount) if amount is not None else Decimal(payment.amount)
        if refund_amount <= 0 or refund_amount > Decimal(payment.amount):
            raise ValidationError(
                f"Refund amount must be between 0 and {payment.amount}", field="refund_amount"
            )
        return refund_amount

    async def discard(self, booking_id) -> None:
        """Forget the session (navigating away). Stops any countdown."""
        async with self.locks.hold(booking_id):
            session = self._sessions.pop(str(booking_id), None)
            if session is not None:
                self._stop_countdown(session)

    def evict_expired(self, now: Optional[float] = None) -> int:
        """Drop sessions untouched for session_ttl seconds. A processing session is never dropped."""
        now = time.monotonic() if now is None else now
        expired = [
            key
            for key, session in self._sessions.items()
            if session.state != CheckoutState.PROCESSING and now - session.updated_at >= self.session_ttl
        ]
        for key in expired:
            self._stop_countdown(self._sessions.pop(key))
        if expired:
            logger.info(f"Evicted {len(expired)} idle payment sessions")
        return len(expired)

    async def shutdown(self) -> None:
        for session in self._sessions.values():
            self._stop_countdown(session)
            if session.inflight_task is not None and not session.inflight_task.done():
                session.inflight_task.cancel()

    # ── Navigation ────────────────────────────────────────────

    async def proceed_to_payment(self, booking_id) -> SessionResult:
        return await self._navigate(booking_id, CheckoutState.SUMMARY, CheckoutState.PAYMENT)

    async def back_to_summary(self, booking_id) -> SessionResult:
        return await self._navigate(booking_id, CheckoutState.PAYMENT, CheckoutState.SUMMARY)

    async def cancel_processing(self, booking_id) -> SessionResult:
        """Abandon the in-flight gateway call and return to the payment step."""
        async with self.locks.hold(booking_id):
            try:
                session = self._require_session(booking_id)
                self._transition(session, CheckoutState.PAYMENT, expected=CheckoutState.PROCESSING)
            except InvalidStateError as e:
                return self._rejected(e, self.get_session(booking_id))
            if session.inflight_task is not None and not session.inflight_task.done():
                session.inflight_task.cancel()
            session.inflight_task = None
            logger.info(f"Payment processing cancelled for booking {booking_id}")
            return SessionResult(ok=True, session=session)

    async def retry(self, booking_id) -> SessionResult:
        """Reopen the payment step after a retryable failure."""
        async with self.locks.hold(booking_id):
            try:
                session = self._require_session(booking_id)
                if session.state == CheckoutState.FAILED_EXHAUSTED:
                    raise RetryExhaustedError(session.retry_count)
                if session.state != CheckoutState.FAILED or not session.retry_available:
                    raise InvalidStateError("Retry is not available for this payment", current=session.state.value)
                self._transition(session, CheckoutState.PAYMENT)
            except InvalidStateError as e:
                return self._rejected(e, self.get_session(booking_id))
            return SessionResult(ok=True, session=session)

    async def _navigate(self, booking_id, expected: CheckoutState, target: CheckoutState) -> SessionResult:
        async with self.locks.hold(booking_id):
            try:
                session = self._require_session(booking_id)
                self._transition(session, target, expected=expected)
            except InvalidStateError as e:
                return self._rejected(e, self.get_session(booking_id))
            return SessionResult(ok=True, session=session)

    # ── Submit ────────────────────────────────────────────────

    async def submit(self, booking: Booking, transaction_id: str, method: str = "upi") -> SessionResult:
        transaction_id = (transaction_id or "").strip()

        # Phase 1: guard and move to PROCESSING
        async with self.locks.hold(booking.id):
            session = self.get_session(booking.id)
            try:
                if session is None:
                    raise InvalidStateError("No payment attempt in progress for this booking")
                if session.state == CheckoutState.FAILED_EXHAUSTED:
                    raise RetryExhaustedError(session.retry_count)
                if session.state == CheckoutState.PROCESSING:
                    raise InvalidStateError("A payment attempt is already processing", current=session.state.value)
                if session.next_retry_in > 0:
                    raise RetryNotReadyError(session.next_retry_in)
                # The booking may have been cancelled or declined since begin()
                self._check_can_begin(booking, session.purpose, session.amount)
            except (InvalidStateError, ValidationError) as e:
                return self._rejected(e, session)

            if not transaction_id or session.state != CheckoutState.PAYMENT:
                return SessionResult(ok=True, accepted=False, session=session)

            payment_data = PaymentData(transaction_id=transaction_id, method=method, amount=session.amount)
            if session.purpose == PaymentPurpose.CHARGE:
                validation = await self.gateway.validate(payment_data)
                if not validation.is_valid:
                    # Blocks submission; the retry budget is untouched
                    return self._rejected(
                        ValidationError("; ".join(validation.errors), field="transaction_id"), session
                    )

            self._transition(session, CheckoutState.PROCESSING)
            session.transaction_id = transaction_id
            attempt_id = session.attempt_id
            session.inflight_task = asyncio.create_task(self._call_gateway(session, booking, payment_data))
            inflight = session.inflight_task

        # Phase 2: the gateway call, outside the lock
        outcome: Optional[GatewayResult] = None
        failure: Optional[Exception] = None
        try:
            outcome = await asyncio.wait_for(inflight, timeout=self.timeout)
        except asyncio.CancelledError:
            if session.attempt_id == attempt_id and session.state == CheckoutState.PROCESSING:
                # we were cancelled ourselves, not through cancel_processing()
                session.state = CheckoutState.PAYMENT
                session.inflight_task = None
                raise
            cancelled = InvalidStateError("Payment processing was cancelled", current=session.state.value)
            result = self._rejected(cancelled, session)
            result.accepted = True
            return result
        except Exception as e:
            failure = e

        if outcome is not None and not outcome.success:
            failure = outcome.error or PaymentGatewayError("Payment failed at gateway")

        # Phase 3: apply the outcome
        async with self.locks.hold(booking.id):
            if session.attempt_id != attempt_id or session.state != CheckoutState.PROCESSING:
                # cancelled or superseded while the call was in flight
                return SessionResult(ok=False, accepted=True, session=self.get_session(booking.id))
            session.inflight_task = None

            if failure is None:
                event = self._confirm(session, booking, outcome)
                await self._publish(event)
                if session.purpose == PaymentPurpose.CHARGE and booking.status not in PAYABLE_STATUSES:
                    error, refund_event = self._charge_after_close(session, booking)
                    await self._publish(refund_event)
                    return SessionResult(
                        ok=False, accepted=True, session=session, error=session.last_error, exception=error
                    )
                return SessionResult(ok=True, accepted=True, session=session)

            info = self.classifier.classify(failure)
            event = self._fail(session, booking, info)
            await self._publish(event)
            return SessionResult(ok=False, accepted=True, session=session, error=info, exception=failure)

    async def _call_gateway(self, session: PaymentSession, booking: Booking, payment_data: PaymentData) -> GatewayResult:
        if session.purpose == PaymentPurpose.REFUND:
            reason = session.reason or "Refund"
            return await self.gateway.process_refund(payment_data.transaction_id, session.amount, reason)
        return await self.gateway.process(booking.id, payment_data)

    def _confirm(self, session: PaymentSession, booking: Booking, outcome: GatewayResult) -> PaymentConfirmed:
        self._transition(session, CheckoutState.CONFIRMED)
        self._stop_countdown(session)
        session.retry_available = False
        session.last_error = None

        now = datetime.now(timezone.utc)
        payment = booking.payment
        if session.purpose == PaymentPurpose.REFUND:
            payment.status = PaymentStatus.REFUNDED
            payment.refund_id = outcome.transaction_id
            payment.refund_amount = session.amount
            payment.refunded_at = now
        else:
            payment.status = PaymentStatus.PAID
            payment.transaction_id = session.transaction_id
            payment.paid_at = now
        payment.last_error = None

        logger.info(
            f"Payment attempt {session.attempt_id} confirmed for booking {booking.id} ({session.purpose.value})"
        )
        return PaymentConfirmed.for_booking(
            booking,
            amount=session.amount,
            transaction_id=outcome.transaction_id or session.transaction_id,
            purpose=session.purpose.value,
        )

    def _charge_after_close(self, session: PaymentSession, booking: Booking) -> tuple[PaymentGatewayError, RefundFailed]:
        """
        The charge was captured but the booking was closed while it was in
        flight (another instance, or a lifecycle not wired to this
        orchestrator). Nothing was owed, so the whole amount goes to refund
        reconciliation.
        """
        status = BookingStatus(booking.status).value
        error = PaymentGatewayError(
            f"Charge {session.transaction_id} captured after booking {booking.id} was {status}",
            code="CHARGED_AFTER_CLOSE",
            user_message="This booking was closed while your payment was processing. The full amount will be refunded.",
        )
        info = self.classifier.classify(error)
        session.last_error = info
        booking.payment.last_error = info.message

        logger.error(
            f"Payment attempt {session.attempt_id} captured {session.amount} on {status} booking {booking.id}; "
            f"queued for full refund"
        )
        return error, RefundFailed.for_booking(
            booking,
            payment_id=booking.payment.id,
            refund_amount=session.amount,
            reason=f"Charged after booking was {status}",
            error=info,
        )

    def _fail(self, session: PaymentSession, booking: Booking, info: ErrorInfo) -> PaymentFailed:
        session.retry_count = min(session.retry_count + 1, self.max_attempts)
        session.last_error = info

        if session.retry_count >= self.max_attempts:
            self._transition(session, CheckoutState.FAILED_EXHAUSTED)
            session.retry_available = False
            self._stop_countdown(session)
        else:
            self._transition(session, CheckoutState.FAILED)
            session.retry_available = self.classifier.should_auto_retry(info)
            if session.retry_available:
                self._start_countdown(session, self.backoff_for(session.retry_count))

        if session.purpose == PaymentPurpose.CHARGE:
            booking.payment.status = PaymentStatus.FAILED
        booking.payment.last_error = info.message

        logger.warning(
            f"Payment attempt {session.attempt_id} failed for booking {booking.id} "
            f"({info.type.value}/{info.severity.value}, {session.retry_count}/{self.max_attempts}): {info.message}"
        )
        return PaymentFailed.for_booking(
            booking,
            amount=session.amount,
            error=info,
            retry_count=session.retry_count,
            retry_available=session.retry_available,
            purpose=session.purpose.value,
        )

    # ── Retry countdown ───────────────────────────────────────

    def tick(self, booking_id, seconds: int = 1) -> Optional[PaymentSession]:
        """Advance the countdown by hand (used when auto_countdown is off)."""
        session = self.get_session(booking_id)
        if session is not None and session.next_retry_in > 0:
            session.next_retry_in = max(0, session.next_retry_in - seconds)
        return session

    async def dismiss_retry(self, booking_id) -> SessionResult:
        """
        Stop the countdown timer. No gateway call, no event, and the retry
        count, last error and retry offer are left exactly as they were.
        """
        async with self.locks.hold(booking_id):
            try:
                session = self._require_session(booking_id)
            except InvalidStateError as e:
                return self._rejected(e, None)
            self._stop_countdown(session)
            session.next_retry_in = 0
            return SessionResult(ok=True, session=session)

    def _start_countdown(self, session: PaymentSession, seconds: int) -> None:
        self._stop_countdown(session)
        session.next_retry_in = seconds
        if self.auto_countdown:
            session.countdown_task = asyncio.create_task(self._run_countdown(session))

    @staticmethod
    def _stop_countdown(session: PaymentSession) -> None:
        task = session.countdown_task
        if task is not None and not task.done():
            task.cancel()
        session.countdown_task = None

    @staticmethod
    async def _run_countdown(session: PaymentSession) -> None:
        while session.next_retry_in > 0:
            await asyncio.sleep(1)
            session.next_retry_in -= 1

    # ── Helpers ───────────────────────────────────────────────

    def _require_session(self, booking_id) -> PaymentSession:
        session = self.get_session(booking_id)
        if session is None:
            raise InvalidStateError("No payment attempt in progress for this booking")
        return session

    @staticmethod
    def _transition(
        session: PaymentSession,
        target: CheckoutState,
        expected: Optional[CheckoutState] = None,
    ) -> None:
        if expected is not None and session.state != expected:
            raise InvalidStateError(
                f"Expected payment state '{expected.value}', found '{session.state.value}'",
                current=session.state.value,
            )
        if target not in _TRANSITIONS.get(session.state, set()):
            raise InvalidStateError(
                f"Cannot move payment from '{session.state.value}' to '{target.value}'",
                current=session.state.value,
            )
        session.state = target
        session.updated_at = time.monotonic()

    def _rejected(self, exc: Exception, session: Optional[PaymentSession]) -> SessionResult:
        return SessionResult(
            ok=False,
            accepted=False,
            session=session,
            error=self.classifier.classify(exc),
            exception=exc,
        )

    async def _publish(self, event):
        if self.bus is not None:
            return await self.bus.publish(event)
        return event
