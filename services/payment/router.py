"""
services/payment/router.py
Checkout endpoints over PaymentOrchestrator.

Flow:
  1. POST /payments/{booking_id}/session          → open (or resume) an attempt
  2. POST /payments/{booking_id}/session/proceed  → summary → payment step
  3. POST /payments/{booking_id}/session/submit   → transaction id to the gateway
  4. On failure: wait out next_retry_in, POST .../retry, submit again
     (three failures exhaust the attempt; open a new session to start over)

A gateway failure on submit is a normal outcome, not an HTTP error: the
response is 200 with the session in `failed`/`failed_exhausted` and
`last_error` filled in. Requests the state machine rejects are 409/422.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from services.booking.repository import BookingStore
from services.dependencies import get_booking_store, get_classifier, get_gateway, get_orchestrator
from services.errors.classifier import ErrorClassifier
from services.payment.orchestrator import PaymentOrchestrator, PaymentPurpose, PaymentSession
from shared.middleware.auth import Principal, UserRole, get_current_principal
from shared.models.models import Booking
from shared.results import SessionResult
from shared.schemas.schemas import (
    PaymentData,
    PaymentSessionBeginRequest,
    PaymentSessionResponse,
    PaymentSubmitRequest,
    PaymentValidationResponse,
)
from shared.utils.errors import raise_for_result

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Helpers ───────────────────────────────────────────────────

def _session_response(
    session: PaymentSession,
    orchestrator: PaymentOrchestrator,
    classifier: ErrorClassifier,
) -> PaymentSessionResponse:
    return PaymentSessionResponse(
        booking_id=session.booking_id,
        attempt_id=session.attempt_id,
        purpose=session.purpose.value,
        state=session.state.value,
        amount=session.amount,
        retry_count=session.retry_count,
        max_attempts=orchestrator.max_attempts,
        next_retry_in=session.next_retry_in,
        retry_available=session.retry_available,
        last_error=session.last_error,
        suggestions=classifier.get_retry_suggestions(session.last_error) if session.last_error else [],
        transaction_id=session.transaction_id,
    )


async def _get_payable_booking(booking_id: UUID, principal: Principal, store: BookingStore) -> Booking:
    booking = await store.get(booking_id)
    if not (principal.owns(booking.user_id) or principal.can_manage_hospital(booking.hospital_id)):
        raise HTTPException(status_code=403, detail="Not authorized")
    return booking


def _respond(
    result: SessionResult,
    orchestrator: PaymentOrchestrator,
    classifier: ErrorClassifier,
) -> PaymentSessionResponse:
    raise_for_result(result)
    return _session_response(result.session, orchestrator, classifier)


# ── Validation ────────────────────────────────────────────────

@router.post("/validate", response_model=PaymentValidationResponse)
async def validate_payment(
    data: PaymentData,
    principal: Principal = Depends(get_current_principal),
    gateway=Depends(get_gateway),
):
    """Check payer-entered payment details without submitting anything."""
    return await gateway.validate(data)


# ── Checkout Session ──────────────────────────────────────────

@router.post("/{booking_id}/session", response_model=PaymentSessionResponse)
async def begin_session(
    booking_id: UUID,
    data: PaymentSessionBeginRequest,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    """
    Open the payment attempt for a booking, or resume the one in progress.
    purpose=refund is the manual reconciliation path and is limited to
    hospital authorities and admins.
    """
    booking = await _get_payable_booking(booking_id, principal, store)
    purpose = PaymentPurpose(data.purpose)
    if purpose == PaymentPurpose.REFUND and principal.role == UserRole.PATIENT:
        raise HTTPException(status_code=403, detail="Refunds are issued by the hospital")

    result = await orchestrator.begin(booking, purpose=purpose, amount=data.amount, reason=data.reason)
    return _respond(result, orchestrator, classifier)


@router.get("/{booking_id}/session", response_model=PaymentSessionResponse)
async def get_session(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    """Current attempt, including the live retry countdown."""
    await _get_payable_booking(booking_id, principal, store)
    session = orchestrator.get_session(booking_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No payment attempt in progress for this booking")
    return _session_response(session, orchestrator, classifier)


@router.delete("/{booking_id}/session", status_code=204)
async def discard_session(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Leaving checkout: drop the attempt and stop its countdown."""
    await _get_payable_booking(booking_id, principal, store)
    await orchestrator.discard(booking_id)


@router.post("/{booking_id}/session/proceed", response_model=PaymentSessionResponse)
async def proceed_to_payment(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.proceed_to_payment(booking_id)
    return _respond(result, orchestrator, classifier)


@router.post("/{booking_id}/session/back", response_model=PaymentSessionResponse)
async def back_to_summary(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.back_to_summary(booking_id)
    return _respond(result, orchestrator, classifier)


@router.post("/{booking_id}/session/submit", response_model=PaymentSessionResponse)
async def submit_payment(
    booking_id: UUID,
    data: PaymentSubmitRequest,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    """
    Submit the payer's transaction id. Waits for the gateway (bounded by
    PAYMENT_PROCESS_TIMEOUT_SECONDS) and returns the resulting session.
    """
    booking = await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.submit(booking, data.transaction_id, data.method)

    if not result.accepted:
        # Rejected before reaching the gateway (or a no-op): nothing to persist
        return _respond(result, orchestrator, classifier)

    # Confirmed or failed, the payment row changed
    await store.save(booking)
    if result.session is None:
        raise HTTPException(status_code=409, detail="Payment attempt was superseded")
    return _session_response(result.session, orchestrator, classifier)


@router.post("/{booking_id}/session/cancel", response_model=PaymentSessionResponse)
async def cancel_processing(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    """Abandon the in-flight gateway call; back to the payment step."""
    await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.cancel_processing(booking_id)
    return _respond(result, orchestrator, classifier)


@router.post("/{booking_id}/session/retry", response_model=PaymentSessionResponse)
async def retry_payment(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.retry(booking_id)
    return _respond(result, orchestrator, classifier)


@router.post("/{booking_id}/session/dismiss-retry", response_model=PaymentSessionResponse)
async def dismiss_retry(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    classifier: ErrorClassifier = Depends(get_classifier),
):
    """Stop the retry countdown. Retry count and error are left untouched."""
    await _get_payable_booking(booking_id, principal, store)
    result = await orchestrator.dismiss_retry(booking_id)
    return _respond(result, orchestrator, classifier)
