"""
services/booking/router.py
Booking lifecycle endpoints: operator decisions, cancellation with refund,
and the read-only refund quote.
States: PENDING → APPROVED | DECLINED | CANCELLED
        APPROVED → COMPLETED | CANCELLED
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from services.booking.lifecycle import BookingLifecycle
from services.booking.repository import BookingStore
from services.dependencies import get_booking_store, get_lifecycle
from shared.middleware.auth import Principal, get_current_principal, require_hospital_authority
from shared.models.models import Booking
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingDeclineRequest,
    BookingResponse,
    CancellationResponse,
    RefundQuoteResponse,
)
from shared.utils.errors import raise_for_result

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def _can_view(principal: Principal, booking: Booking) -> bool:
    return principal.owns(booking.user_id) or principal.can_manage_hospital(booking.hospital_id)


async def _get_booking_for(booking_id: UUID, principal: Principal, store: BookingStore) -> Booking:
    booking = await store.get(booking_id)
    if not _can_view(principal, booking):
        raise HTTPException(status_code=403, detail="Not authorized")
    return booking


async def _get_managed_booking(booking_id: UUID, principal: Principal, store: BookingStore) -> Booking:
    booking = await store.get(booking_id)
    if not principal.can_manage_hospital(booking.hospital_id):
        raise HTTPException(status_code=403, detail="Not authorized to manage this hospital's bookings")
    return booking


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
):
    """Patient sees own bookings, hospital authority sees its hospital's, admin sees all."""
    booking = await _get_booking_for(booking_id, principal, store)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/refund-quote", response_model=RefundQuoteResponse)
async def get_refund_quote(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """What cancelling right now would refund. Nothing is changed."""
    booking = await _get_booking_for(booking_id, principal, store)
    return RefundQuoteResponse(booking_id=booking.id, decision=lifecycle.refund_quote(booking))


# ── Cancellation ──────────────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    principal: Principal = Depends(get_current_principal),
    store: BookingStore = Depends(get_booking_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """
    Cancel a PENDING or APPROVED booking.
    Refund tiers: >24h before → 80%, >12h → 50%, otherwise none.
    A refund failure does not undo the cancellation; it is returned in
    `refund_error` and queued for reconciliation.
    """
    booking = await _get_booking_for(booking_id, principal, store)

    result = await lifecycle.cancel(
        booking,
        reason=data.reason,
        request_refund=data.request_refund,
        actor=principal.actor,
    )
    raise_for_result(result)

    return CancellationResponse(
        booking=BookingResponse.model_validate(result.booking),
        refund=result.refund_decision,
        refund_processed=result.refund_processed,
        refund_error=result.refund_error,
    )


# ── Hospital Decisions ────────────────────────────────────────

@router.post("/{booking_id}/approve", response_model=BookingResponse)
async def approve_booking(
    booking_id: UUID,
    principal: Principal = Depends(require_hospital_authority),
    store: BookingStore = Depends(get_booking_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Hospital approves the booking. Status: PENDING → APPROVED."""
    booking = await _get_managed_booking(booking_id, principal, store)
    result = await lifecycle.approve(booking, actor=principal.actor)
    raise_for_result(result)
    return BookingResponse.model_validate(result.booking)


@router.post("/{booking_id}/decline", response_model=BookingResponse)
async def decline_booking(
    booking_id: UUID,
    data: BookingDeclineRequest,
    principal: Principal = Depends(require_hospital_authority),
    store: BookingStore = Depends(get_booking_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Hospital declines the booking. A reason is required."""
    booking = await _get_managed_booking(booking_id, principal, store)
    result = await lifecycle.decline(booking, data.reason, actor=principal.actor)
    raise_for_result(result)
    return BookingResponse.model_validate(result.booking)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    principal: Principal = Depends(require_hospital_authority),
    store: BookingStore = Depends(get_booking_store),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Hospital marks an APPROVED booking as completed."""
    booking = await _get_managed_booking(booking_id, principal, store)
    result = await lifecycle.complete(booking, actor=principal.actor)
    raise_for_result(result)
    return BookingResponse.model_validate(result.booking)

