"""
tasks/payment_tasks.py
Celery tasks for refunds that did not go through at cancellation time:
- reconcile_refund: re-attempt one refund with exponential backoff
- sweep_unreconciled_refunds: beat task that re-enqueues anything missed

A cancelled booking whose refund failed keeps payment.status == PAID and a
non-empty payment.last_error. That pair is what these tasks look for.
All tasks are idempotent: running twice has no side effect.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import razorpay
import requests
from celery.exceptions import MaxRetriesExceededError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from services.booking.lifecycle import refund_reason
from services.refund.policy import RefundPolicyEngine
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Prefix of last_error for refunds the gateway refused; the sweep leaves these alone
REJECTED_PREFIX = "Refund rejected by gateway"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _get_sync_session():
    """Create a synchronous SQLAlchemy session (Celery runs sync by default)."""
    sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
    engine = create_engine(sync_url, pool_pre_ping=True, pool_size=5)
    Session = sessionmaker(bind=engine)
    return Session()


def _get_razorpay():
    """Get authenticated Razorpay client."""
    return razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))


def enqueue_refund_reconciliation(payment_id: str, amount, reason: str):
    """Hand a failed refund to the worker. Amount travels as a string to keep it exact."""
    return reconcile_refund.apply_async(
        args=[str(payment_id), str(amount), reason],
        queue="payments",
    )


# ── Refund Tasks ───────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=settings.REFUND_RECONCILE_MAX_RETRIES, default_retry_delay=120)
def reconcile_refund(self, payment_id: str, amount: str, reason: str):
    """
    Re-attempt a Razorpay refund that failed during cancellation.

    Gateway rejections (BadRequestError) are not retried: the refund is left
    for manual reconciliation with the gateway's reason in last_error.
    Transient failures retry with a 120s * 2^n countdown until max_retries.

    Idempotent: skips if refund_id is already set or the payment is REFUNDED.
    """
    from shared.models.models import Payment, PaymentStatus

    db = _get_sync_session()
    try:
        payment = db.execute(
            select(Payment).where(Payment.id == uuid.UUID(payment_id))
        ).scalar_one_or_none()

        if not payment:
            logger.error(f"reconcile_refund: payment {payment_id} not found")
            return None

        if payment.refund_id or payment.status == PaymentStatus.REFUNDED:
            logger.info(f"Refund already processed for payment {payment_id}: {payment.refund_id}")
            return payment.refund_id

        if payment.status != PaymentStatus.PAID or not payment.transaction_id:
            logger.error(f"Payment {payment_id} ({payment.status.value}) has nothing to refund against")
            return None

        refund_amount = Decimal(amount).quantize(Decimal("0.01"))
        client = _get_razorpay()
        try:
            refund = client.payment.refund(
                payment.transaction_id,
                {
                    "amount": int(refund_amount * 100),
                    "notes": {"reason": reason, "payment_id": payment_id},
                },
            )
        except razorpay.errors.BadRequestError as e:
            payment.last_error = f"{REJECTED_PREFIX}: {e}"
            db.commit()
            logger.warning(f"Refund for payment {payment_id} rejected; needs manual reconciliation: {e}")
            return None

        payment.status = PaymentStatus.REFUNDED
        payment.refund_id = refund.get("id")
        payment.refund_amount = refund_amount
        payment.refunded_at = datetime.now(timezone.utc)
        payment.last_error = None
        db.commit()
        logger.info(f"Refund {payment.refund_id} of ₹{refund_amount} reconciled for payment {payment_id}")
        return payment.refund_id

    except (razorpay.errors.GatewayError, razorpay.errors.ServerError, requests.RequestException) as e:
        db.rollback()
        logger.warning(f"reconcile_refund attempt {self.request.retries + 1} failed for {payment_id}: {e}")
        try:
            raise self.retry(exc=e, countdown=120 * (2 ** self.request.retries))
        except MaxRetriesExceededError:
            logger.error(f"Giving up on refund for payment {payment_id}; left for manual reconciliation")
            return None
    finally:
        db.close()


@celery_app.task
def sweep_unreconciled_refunds():
    """
    Beat task: finds cancelled bookings still holding a PAID payment with a
    recorded refund error, and re-enqueues reconcile_refund for each.
    Refunds the gateway already refused are left for manual handling.
    The amount is recomputed from the cancellation time, so the tier matches
    what the patient was quoted. A charge captured after the cancellation is
    refunded in full.
    """
    from shared.models.models import Booking, BookingStatus, Payment, PaymentStatus

    engine = RefundPolicyEngine()
    db = _get_sync_session()
    try:
        rows = db.execute(
            select(Payment, Booking)
            .join(Booking, Booking.id == Payment.booking_id)
            .where(
                Booking.status == BookingStatus.CANCELLED,
                Payment.status == PaymentStatus.PAID,
                Payment.refund_id == None,  # noqa: E711
                Payment.last_error != None,  # noqa: E711
                ~Payment.last_error.startswith(REJECTED_PREFIX),
            )
        ).all()

        logger.info(f"sweep_unreconciled_refunds: found {len(rows)} refunds pending reconciliation")

        for payment, booking in rows:
            if payment.paid_at and booking.cancelled_at and payment.paid_at > booking.cancelled_at:
                # charged after the booking closed, so nothing was owed
                amount = payment.amount
            else:
                decision = engine.decide(
                    booking.scheduled_date,
                    booking.cancelled_at or datetime.now(timezone.utc),
                    payment.amount,
                    payment.status,
                )
                if not decision.eligible:
                    continue
                amount = decision.refund_amount
            enqueue_refund_reconciliation(
                payment.id,
                amount,
                refund_reason(booking.cancellation_reason or "cancelled"),
            )
    finally:
        db.close()
