"""
tests/test_payments.py
HTTP tests for the checkout session:
begin → proceed → submit, failures with retry countdown, and refund sessions.
"""

import uuid

import pytest
from httpx import AsyncClient

from shared.exceptions import PaymentGatewayError
from shared.middleware.auth import UserRole
from shared.models.models import BookingStatus, PaymentStatus
from tests.conftest import auth_headers, make_booking


def unpaid(core):
    return core.add(make_booking(status=BookingStatus.APPROVED, payment_status=PaymentStatus.PENDING))


async def open_checkout(client: AsyncClient, booking) -> dict:
    headers = auth_headers(booking.user_id)
    begun = await client.post(f"/payments/{booking.id}/session", headers=headers, json={})
    assert begun.status_code == 200
    proceeded = await client.post(f"/payments/{booking.id}/session/proceed", headers=headers)
    assert proceeded.status_code == 200
    return proceeded.json()


# ── Validation ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_validate_reports_every_problem(client: AsyncClient):
    response = await client.post(
        "/payments/validate",
        headers=auth_headers(uuid.uuid4()),
        json={"transaction_id": "ab", "method": "cheque"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["is_valid"] is False
    assert len(data["errors"]) == 2


@pytest.mark.asyncio
async def test_validate_accepts_good_reference(client: AsyncClient):
    response = await client.post(
        "/payments/validate", headers=auth_headers(uuid.uuid4()), json={"transaction_id": "pay_N1x2Y3"}
    )

    assert response.json() == {"is_valid": True, "errors": []}


# ── Session ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_checkout_happy_path(client: AsyncClient, core):
    """Summary → payment → confirmed; the booking's payment becomes PAID."""
    booking = unpaid(core)
    session = await open_checkout(client, booking)
    assert session["state"] == "payment"
    assert session["max_attempts"] == 3

    response = await client.post(
        f"/payments/{booking.id}/session/submit",
        headers=auth_headers(booking.user_id),
        json={"transaction_id": " pay_OK001 "},
    )

    assert response.status_code == 200
    assert response.json()["state"] == "confirmed"
    assert response.json()["transaction_id"] == "pay_OK001"
    assert booking.payment.status == PaymentStatus.PAID
    assert core.store.saves >= 1


@pytest.mark.asyncio
async def test_gateway_failure_is_a_normal_response(client: AsyncClient, core):
    """A declined payment returns 200 with the failed session and hints."""
    core.gateway.outcomes = [PaymentGatewayError("Card declined by issuer")]
    booking = unpaid(core)
    await open_checkout(client, booking)

    response = await client.post(
        f"/payments/{booking.id}/session/submit",
        headers=auth_headers(booking.user_id),
        json={"transaction_id": "pay_TRY001"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["state"] == "failed"
    assert data["retry_count"] == 1
    assert data["retry_available"] is True
    assert data["next_retry_in"] == 2
    assert data["last_error"]["type"] == "payment"
    assert "Try a different payment method" in data["suggestions"]


@pytest.mark.asyncio
async def test_submit_during_countdown_is_409_with_retry_after(client: AsyncClient, core):
    core.gateway.outcomes = [PaymentGatewayError("Declined")]
    booking = unpaid(core)
    headers = auth_headers(booking.user_id)
    await open_checkout(client, booking)
    await client.post(f"/payments/{booking.id}/session/submit", headers=headers, json={"transaction_id": "pay_TRY001"})

    response = await client.post(
        f"/payments/{booking.id}/session/submit", headers=headers, json={"transaction_id": "pay_TRY002"}
    )

    assert response.status_code == 409
    assert response.headers["Retry-After"] == "2"
    assert response.json()["detail"]["code"] == "RETRY_NOT_READY"


@pytest.mark.asyncio
async def test_dismiss_retry_and_retry(client: AsyncClient, core):
    core.gateway.outcomes = [PaymentGatewayError("Declined")]
    booking = unpaid(core)
    headers = auth_headers(booking.user_id)
    await open_checkout(client, booking)
    await client.post(f"/payments/{booking.id}/session/submit", headers=headers, json={"transaction_id": "pay_TRY001"})

    dismissed = await client.post(f"/payments/{booking.id}/session/dismiss-retry", headers=headers)
    retried = await client.post(f"/payments/{booking.id}/session/retry", headers=headers)

    assert dismissed.status_code == 200
    assert dismissed.json()["next_retry_in"] == 0
    assert dismissed.json()["retry_count"] == 1
    assert retried.status_code == 200
    assert retried.json()["state"] == "payment"


@pytest.mark.asyncio
async def test_invalid_reference_is_422_and_keeps_budget(client: AsyncClient, core):
    booking = unpaid(core)
    await open_checkout(client, booking)

    response = await client.post(
        f"/payments/{booking.id}/session/submit",
        headers=auth_headers(booking.user_id),
        json={"transaction_id": "a$"},
    )

    assert response.status_code == 422
    assert response.json()["detail"]["field"] == "transaction_id"
    assert core.orchestrator.get_session(booking.id).retry_count == 0


@pytest.mark.asyncio
async def test_get_and_discard_session(client: AsyncClient, core):
    booking = unpaid(core)
    headers = auth_headers(booking.user_id)

    none_yet = await client.get(f"/payments/{booking.id}/session", headers=headers)
    await open_checkout(client, booking)
    current = await client.get(f"/payments/{booking.id}/session", headers=headers)
    discarded = await client.delete(f"/payments/{booking.id}/session", headers=headers)
    gone = await client.get(f"/payments/{booking.id}/session", headers=headers)

    assert none_yet.status_code == 404
    assert current.json()["state"] == "payment"
    assert discarded.status_code == 204
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_back_to_summary(client: AsyncClient, core):
    booking = unpaid(core)
    await open_checkout(client, booking)

    response = await client.post(f"/payments/{booking.id}/session/back", headers=auth_headers(booking.user_id))

    assert response.json()["state"] == "summary"


@pytest.mark.asyncio
async def test_paid_booking_cannot_be_charged_again(client: AsyncClient, core):
    booking = core.add(make_booking())

    response = await client.post(f"/payments/{booking.id}/session", headers=auth_headers(booking.user_id), json={})

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_stranger_cannot_touch_checkout(client: AsyncClient, core):
    booking = unpaid(core)

    response = await client.post(f"/payments/{booking.id}/session", headers=auth_headers(uuid.uuid4()), json={})

    assert response.status_code == 403


# ── Refund Sessions ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_patient_cannot_open_refund_session(client: AsyncClient, core):
    booking = core.add(make_booking())

    response = await client.post(
        f"/payments/{booking.id}/session",
        headers=auth_headers(booking.user_id),
        json={"purpose": "refund"},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_hospital_issues_manual_refund(client: AsyncClient, core):
    """Manual reconciliation path for a refund that failed at cancellation."""
    booking = core.add(make_booking())
    headers = auth_headers(uuid.uuid4(), UserRole.HOSPITAL_AUTHORITY, hospital_id=booking.hospital_id)

    begun = await client.post(
        f"/payments/{booking.id}/session",
        headers=headers,
        json={"purpose": "refund", "amount": "500.00", "reason": "Manual reconciliation"},
    )
    await client.post(f"/payments/{booking.id}/session/proceed", headers=headers)
    submitted = await client.post(
        f"/payments/{booking.id}/session/submit",
        headers=headers,
        json={"transaction_id": booking.payment.transaction_id},
    )

    assert begun.json()["purpose"] == "refund"
    assert submitted.status_code == 200
    assert submitted.json()["state"] == "confirmed"
    assert booking.payment.status == PaymentStatus.REFUNDED
    assert core.gateway.refund_calls[0][1] == 500
