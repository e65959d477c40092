"""
tests/test_payment_orchestrator.py
Checkout state machine: navigation, bounded retries with backoff, the
countdown, cancellation of an in-flight call, bookings closed around a charge,
idle session eviction, and refund sessions.
"""

import asyncio
import time
from decimal import Decimal

import pytest

from services.booking.lifecycle import BookingLifecycle
from services.errors.classifier import ErrorClassifier
from services.payment.gateway import GatewayResult
from services.payment.orchestrator import CheckoutState, PaymentOrchestrator, PaymentPurpose
from shared.events import EventBus, PaymentConfirmed, PaymentFailed, RefundFailed
from shared.exceptions import (
    ErrorType,
    GatewayConnectionError,
    PaymentGatewayError,
    ResourceUnavailableError,
    RetryExhaustedError,
    RetryNotReadyError,
)
from shared.locks import BookingLockRegistry
from shared.models.models import BookingStatus, PaymentStatus
from tests.conftest import FakeGateway, make_booking


def pending_booking():
    return make_booking(status=BookingStatus.APPROVED, payment_status=PaymentStatus.PENDING)


async def open_payment_step(orchestrator, booking):
    result = await orchestrator.begin(booking)
    assert result.ok
    result = await orchestrator.proceed_to_payment(booking.id)
    assert result.ok
    return result.session


# ── Navigation ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_begin_opens_summary_and_resumes(core):
    booking = pending_booking()
    first = await core.orchestrator.begin(booking)
    assert first.ok
    assert first.session.state == CheckoutState.SUMMARY
    assert first.session.amount == Decimal("1000.00")

    again = await core.orchestrator.begin(booking)
    assert again.session.attempt_id == first.session.attempt_id


@pytest.mark.asyncio
async def test_back_and_forth_between_summary_and_payment(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    back = await core.orchestrator.back_to_summary(booking.id)
    assert back.ok and back.session.state == CheckoutState.SUMMARY

    again = await core.orchestrator.back_to_summary(booking.id)
    assert not again.ok
    assert again.exception.code == "INVALID_STATE"


@pytest.mark.asyncio
async def test_cannot_charge_paid_or_cancelled_booking(core):
    paid = make_booking(payment_status=PaymentStatus.PAID)
    result = await core.orchestrator.begin(paid)
    assert not result.ok
    assert result.session is None

    cancelled = make_booking(status=BookingStatus.CANCELLED, payment_status=PaymentStatus.PENDING)
    assert not (await core.orchestrator.begin(cancelled)).ok


@pytest.mark.asyncio
async def test_navigation_without_session_is_rejected(core):
    booking = pending_booking()
    result = await core.orchestrator.proceed_to_payment(booking.id)
    assert not result.ok
    assert result.error.type == ErrorType.VALIDATION


@pytest.mark.asyncio
async def test_discard_forgets_session(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)
    await core.orchestrator.discard(booking.id)
    assert core.orchestrator.get_session(booking.id) is None


# ── Submit ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_successful_payment_confirms_and_marks_paid(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "pay_OK001")

    assert result.ok and result.accepted
    assert result.session.state == CheckoutState.CONFIRMED
    assert booking.payment.status == PaymentStatus.PAID
    assert booking.payment.transaction_id == "pay_OK001"
    assert booking.payment.paid_at is not None
    confirmed = [e for e in core.events if isinstance(e, PaymentConfirmed)]
    assert len(confirmed) == 1
    assert confirmed[0].amount == Decimal("1000.00")


@pytest.mark.asyncio
async def test_empty_transaction_id_is_a_noop(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "   ")

    assert result.ok and not result.accepted
    assert result.session.state == CheckoutState.PAYMENT
    assert core.gateway.process_calls == []


@pytest.mark.asyncio
async def test_submit_outside_payment_step_is_a_noop(core):
    booking = pending_booking()
    await core.orchestrator.begin(booking)

    result = await core.orchestrator.submit(booking, "pay_OK001")

    assert not result.accepted
    assert result.session.state == CheckoutState.SUMMARY


@pytest.mark.asyncio
async def test_validation_failure_does_not_use_an_attempt(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "ab")

    assert not result.ok and not result.accepted
    assert result.error.type == ErrorType.VALIDATION
    assert result.error.field == "transaction_id"
    assert result.session.state == CheckoutState.PAYMENT
    assert result.session.retry_count == 0
    assert core.gateway.process_calls == []


@pytest.mark.asyncio
async def test_three_failures_exhaust_the_attempt(core):
    core.gateway.outcomes = [PaymentGatewayError("Card declined by issuer")] * 3
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    first = await core.orchestrator.submit(booking, "pay_TRY001")
    assert not first.ok and first.accepted
    assert first.session.state == CheckoutState.FAILED
    assert first.session.retry_count == 1
    assert first.session.retry_available is True
    assert first.session.next_retry_in == 2
    assert booking.payment.status == PaymentStatus.FAILED

    # Countdown still running
    early = await core.orchestrator.submit(booking, "pay_TRY001")
    assert isinstance(early.exception, RetryNotReadyError)
    early_retry = await core.orchestrator.retry(booking.id)
    assert early_retry.ok  # retry reopens the form; only submit waits for the countdown

    core.orchestrator.tick(booking.id, 2)
    second = await core.orchestrator.submit(booking, "pay_TRY002")
    assert second.session.retry_count == 2
    assert second.session.next_retry_in == 4

    core.orchestrator.tick(booking.id, 4)
    assert (await core.orchestrator.retry(booking.id)).ok
    third = await core.orchestrator.submit(booking, "pay_TRY003")
    assert third.session.state == CheckoutState.FAILED_EXHAUSTED
    assert third.session.retry_count == 3
    assert third.session.retry_available is False

    assert isinstance((await core.orchestrator.retry(booking.id)).exception, RetryExhaustedError)
    assert isinstance((await core.orchestrator.submit(booking, "pay_TRY004")).exception, RetryExhaustedError)
    assert len(core.gateway.process_calls) == 3

    failed = [e for e in core.events if isinstance(e, PaymentFailed)]
    assert [e.retry_count for e in failed] == [1, 2, 3]
    assert failed[-1].retry_available is False


@pytest.mark.asyncio
async def test_begin_after_exhaustion_resets_the_budget(core):
    core.gateway.outcomes = [PaymentGatewayError("Declined")] * 3
    booking = pending_booking()
    session = await open_payment_step(core.orchestrator, booking)
    for _ in range(3):
        core.orchestrator.tick(booking.id, 60)
        await core.orchestrator.retry(booking.id)
        await core.orchestrator.submit(booking, "pay_TRY001")
    assert session.state == CheckoutState.FAILED_EXHAUSTED

    fresh = await core.orchestrator.begin(booking)

    assert fresh.ok
    assert fresh.session.attempt_id != session.attempt_id
    assert fresh.session.retry_count == 0
    assert fresh.session.state == CheckoutState.SUMMARY


@pytest.mark.asyncio
async def test_failed_gateway_result_is_classified(core):
    core.gateway.outcomes = [
        GatewayResult(success=False, error={"status": 503, "error": "Service Unavailable"})
    ]
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "pay_TRY001")

    assert result.error.type == ErrorType.SERVER
    assert result.session.retry_available is True


@pytest.mark.asyncio
async def test_permanent_decline_offers_no_retry(core):
    core.gateway.outcomes = [PaymentGatewayError("Card reported stolen", permanent=True)]
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "pay_TRY001")

    assert result.session.state == CheckoutState.FAILED
    assert result.session.retry_available is False
    assert result.session.next_retry_in == 0
    assert result.session.is_final
    assert not (await core.orchestrator.retry(booking.id)).ok

    # With another instrument the patient starts over
    fresh = await core.orchestrator.begin(booking)
    assert fresh.ok
    assert fresh.session.attempt_id != result.session.attempt_id
    assert fresh.session.state == CheckoutState.SUMMARY


@pytest.mark.asyncio
async def test_begin_after_unretryable_failure_opens_a_fresh_attempt(core):
    core.gateway.outcomes = [ResourceUnavailableError("Bed no longer available")]
    booking = pending_booking()
    session = await open_payment_step(core.orchestrator, booking)

    failed = await core.orchestrator.submit(booking, "pay_TRY001")
    assert failed.error.type == ErrorType.RESOURCE
    assert session.state == CheckoutState.FAILED
    assert session.retry_available is False
    assert session.is_final

    fresh = await core.orchestrator.begin(booking)
    assert fresh.ok
    assert fresh.session.attempt_id != session.attempt_id
    assert fresh.session.retry_count == 0
    assert fresh.session.state == CheckoutState.SUMMARY

    assert (await core.orchestrator.proceed_to_payment(booking.id)).ok
    paid = await core.orchestrator.submit(booking, "pay_TRY002")
    assert paid.ok
    assert booking.payment.status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_retryable_failure_is_resumed_not_replaced(core):
    core.gateway.outcomes = [PaymentGatewayError("Card declined by issuer")]
    booking = pending_booking()
    session = await open_payment_step(core.orchestrator, booking)
    await core.orchestrator.submit(booking, "pay_TRY001")

    again = await core.orchestrator.begin(booking)

    assert not session.is_final
    assert again.session is session
    assert again.session.retry_count == 1


@pytest.mark.asyncio
async def test_network_failure_is_retryable(core):
    core.gateway.outcomes = [GatewayConnectionError("Payment gateway unreachable")]
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    result = await core.orchestrator.submit(booking, "pay_TRY001")

    assert result.error.type == ErrorType.NETWORK
    assert result.session.retry_available is True


@pytest.mark.asyncio
async def test_gateway_timeout_counts_as_network_failure(gateway):
    gateway.delay = 1.0
    orchestrator = PaymentOrchestrator(
        gateway, ErrorClassifier(), EventBus(), BookingLockRegistry(), timeout=0.05, auto_countdown=False
    )
    booking = pending_booking()
    await open_payment_step(orchestrator, booking)

    result = await orchestrator.submit(booking, "pay_SLOW01")

    assert result.error.type == ErrorType.NETWORK
    assert result.session.state == CheckoutState.FAILED
    assert result.session.retry_count == 1


# ── Countdown ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dismiss_retry_only_stops_the_countdown(core):
    core.gateway.outcomes = [PaymentGatewayError("Declined")]
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)
    failed = await core.orchestrator.submit(booking, "pay_TRY001")
    events_before = len(core.events)
    error_before = failed.session.last_error

    result = await core.orchestrator.dismiss_retry(booking.id)

    assert result.ok
    assert result.session.next_retry_in == 0
    assert result.session.retry_count == 1
    assert result.session.retry_available is True
    assert result.session.last_error == error_before
    assert result.session.state == CheckoutState.FAILED
    assert len(core.events) == events_before
    assert len(core.gateway.process_calls) == 1


@pytest.mark.asyncio
async def test_countdown_runs_down_on_its_own(gateway):
    gateway.outcomes = [PaymentGatewayError("Declined")]
    orchestrator = PaymentOrchestrator(gateway, base_delay=1, timeout=5.0)
    booking = pending_booking()
    await open_payment_step(orchestrator, booking)

    result = await orchestrator.submit(booking, "pay_TRY001")
    assert result.session.next_retry_in == 1

    await asyncio.sleep(1.2)
    assert result.session.next_retry_in == 0
    await orchestrator.shutdown()


def test_backoff_doubles_per_failure(core):
    assert [core.orchestrator.backoff_for(n) for n in (1, 2, 3)] == [2, 4, 8]


# ── Concurrency and cancellation ──────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_submit_is_rejected_not_queued(core):
    core.gateway.delay = 0.1
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    first = asyncio.create_task(core.orchestrator.submit(booking, "pay_FIRST1"))
    await asyncio.sleep(0.02)
    second = await core.orchestrator.submit(booking, "pay_SECOND")

    assert not second.ok and not second.accepted
    assert "already processing" in second.error.message
    assert (await first).ok
    assert len(core.gateway.process_calls) == 1


@pytest.mark.asyncio
async def test_lock_is_released_during_gateway_call(core):
    core.gateway.delay = 0.1
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    task = asyncio.create_task(core.orchestrator.submit(booking, "pay_SLOW01"))
    await asyncio.sleep(0.02)

    assert core.orchestrator.get_session(booking.id).state == CheckoutState.PROCESSING
    assert not core.locks.is_locked(booking.id)
    await task


# ── Bookings closed around a charge ───────────────────────────

@pytest.mark.asyncio
async def test_submit_rejected_once_booking_is_cancelled(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)
    assert (await core.lifecycle.cancel(booking, "Patient transferred", request_refund=False)).ok

    result = await core.orchestrator.submit(booking, "pay_LATE01")

    assert not result.ok and not result.accepted
    assert result.exception.code == "INVALID_STATE"
    assert core.gateway.process_calls == []
    assert booking.payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_refused_while_charge_is_processing(core):
    core.gateway.delay = 0.1
    booking = make_booking(status=BookingStatus.PENDING, payment_status=PaymentStatus.PENDING)
    await open_payment_step(core.orchestrator, booking)

    task = asyncio.create_task(core.orchestrator.submit(booking, "pay_SLOW01"))
    await asyncio.sleep(0.02)
    refused = await core.lifecycle.cancel(booking, "Patient transferred", request_refund=True)
    declined = await core.lifecycle.decline(booking, "Bed reassigned")

    assert not refused.ok
    assert refused.exception.code == "PAYMENT_IN_PROGRESS"
    assert not declined.ok
    assert declined.exception.code == "PAYMENT_IN_PROGRESS"
    assert booking.status == BookingStatus.PENDING

    assert (await task).ok
    cancelled = await core.lifecycle.cancel(booking, "Patient transferred", request_refund=True)
    assert cancelled.ok
    assert cancelled.refund_decision is not None
    assert core.gateway.refund_calls


@pytest.mark.asyncio
async def test_charge_landing_after_close_goes_to_full_refund(core):
    # A lifecycle that cannot see this orchestrator's sessions, as on another worker
    unguarded = BookingLifecycle(core.store, core.gateway, bus=core.bus, locks=core.locks)
    core.gateway.delay = 0.1
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    task = asyncio.create_task(core.orchestrator.submit(booking, "pay_SLOW01"))
    await asyncio.sleep(0.02)
    assert (await unguarded.cancel(booking, "Patient transferred", request_refund=True)).ok
    result = await task

    assert not result.ok and result.accepted
    assert result.error.code == "CHARGED_AFTER_CLOSE"
    assert result.error.retryable is True
    assert result.session.state == CheckoutState.CONFIRMED
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment.status == PaymentStatus.PAID
    assert booking.payment.last_error is not None

    refunds = [e for e in core.events if isinstance(e, RefundFailed)]
    assert len(refunds) == 1
    assert refunds[0].refund_amount == Decimal("1000.00")
    assert refunds[0].payment_id == booking.payment.id


# ── Session eviction ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_idle_sessions_are_evicted(gateway):
    gateway.delay = 0.1
    orchestrator = PaymentOrchestrator(gateway, session_ttl=60, auto_countdown=False)
    idle, abandoned, busy = pending_booking(), pending_booking(), pending_booking()
    await orchestrator.begin(idle)
    await open_payment_step(orchestrator, abandoned)
    await open_payment_step(orchestrator, busy)
    task = asyncio.create_task(orchestrator.submit(busy, "pay_SLOW01"))
    await asyncio.sleep(0.02)

    assert orchestrator.evict_expired(now=time.monotonic() + 30) == 0
    assert orchestrator.evict_expired(now=time.monotonic() + 61) == 2

    assert orchestrator.get_session(idle.id) is None
    assert orchestrator.get_session(abandoned.id) is None
    assert orchestrator.is_processing(busy.id)
    assert (await task).ok


@pytest.mark.asyncio
async def test_cancel_processing_returns_to_payment(core):
    core.gateway.delay = 1.0
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)

    task = asyncio.create_task(core.orchestrator.submit(booking, "pay_SLOW01"))
    await asyncio.sleep(0.02)
    cancelled = await core.orchestrator.cancel_processing(booking.id)
    submitted = await task

    assert cancelled.ok
    assert cancelled.session.state == CheckoutState.PAYMENT
    assert cancelled.session.retry_count == 0
    assert not submitted.ok
    assert booking.payment.status == PaymentStatus.PENDING
    assert not any(isinstance(e, (PaymentConfirmed, PaymentFailed)) for e in core.events)


@pytest.mark.asyncio
async def test_cancel_processing_when_idle_is_rejected(core):
    booking = pending_booking()
    await open_payment_step(core.orchestrator, booking)
    assert not (await core.orchestrator.cancel_processing(booking.id)).ok


# ── Refund sessions ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_session_issues_partial_refund(core):
    booking = make_booking(payment_status=PaymentStatus.PAID)
    begun = await core.orchestrator.begin(booking, PaymentPurpose.REFUND, Decimal("400.00"), reason="Goodwill")
    assert begun.ok
    await core.orchestrator.proceed_to_payment(booking.id)

    result = await core.orchestrator.submit(booking, booking.payment.transaction_id)

    assert result.ok
    assert core.gateway.refund_calls == [("pay_TEST123", Decimal("400.00"), "Goodwill")]
    assert booking.payment.status == PaymentStatus.REFUNDED
    assert booking.payment.refund_id == "rfnd_TEST001"
    assert booking.payment.refund_amount == Decimal("400.00")


@pytest.mark.asyncio
async def test_refund_amount_cannot_exceed_payment(core):
    booking = make_booking(payment_status=PaymentStatus.PAID)
    result = await core.orchestrator.begin(booking, PaymentPurpose.REFUND, Decimal("1500.00"))
    assert not result.ok
    assert result.error.field == "refund_amount"


@pytest.mark.asyncio
async def test_refund_requires_paid_booking(core):
    booking = pending_booking()
    result = await core.orchestrator.begin(booking, PaymentPurpose.REFUND)
    assert not result.ok
