"""
services/payment/gateway.py
Payment service port and its Razorpay adapter.

The orchestrator only sees PaymentGateway:
    validate(payment_data)                          -> {is_valid, errors}
    process(booking_id, payment_data)               -> GatewayResult
    process_refund(transaction_id, amount, reason)  -> GatewayResult

Failures come back either as GatewayResult(success=False, error=...) or as a
raised BookingCoreError; the orchestrator classifies both the same way.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol

import razorpay
import requests
from pybreaker import CircuitBreakerError
from starlette.concurrency import run_in_threadpool

from config.settings import settings
from shared.exceptions import (
    GatewayConnectionError,
    PaymentGatewayError,
    ServiceUnavailableError,
    ValidationError,
)
from shared.schemas.schemas import PaymentData, PaymentValidationResponse
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)

TRANSACTION_ID_MIN_LENGTH = 3
TRANSACTION_ID_MAX_LENGTH = 100
ALLOWED_METHODS = {"upi", "card", "netbanking", "wallet", "bank_transfer"}
_TRANSACTION_ID_RE = re.compile(r"^[A-Za-z0-9_\-./]+$")

# Razorpay error reasons that will never succeed on the same instrument
PERMANENT_DECLINE_REASONS = {
    "card_stolen",
    "card_lost",
    "card_blocked",
    "fraud_suspected",
    "account_closed",
    "payment_blocked",
}


@dataclass
class GatewayResult:
    success: bool
    transaction: dict[str, Any] = field(default_factory=dict)
    error: Optional[Any] = None

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transaction.get("id")


class PaymentGateway(Protocol):
    async def validate(self, payment_data: PaymentData) -> PaymentValidationResponse: ...

    async def process(self, booking_id, payment_data: PaymentData) -> GatewayResult: ...

    async def process_refund(self, transaction_id: str, refund_amount: Decimal, reason: str) -> GatewayResult: ...


def validate_payment_data(payment_data: PaymentData) -> PaymentValidationResponse:
    """Local checks shared by every gateway. Never touches the network."""
    errors: list[str] = []
    transaction_id = (payment_data.transaction_id or "").strip()

    if not transaction_id:
        errors.append("Transaction ID is required")
    elif len(transaction_id) < TRANSACTION_ID_MIN_LENGTH:
        errors.append(f"Transaction ID must be at least {TRANSACTION_ID_MIN_LENGTH} characters")
    elif len(transaction_id) > TRANSACTION_ID_MAX_LENGTH:
        errors.append(f"Transaction ID must be at most {TRANSACTION_ID_MAX_LENGTH} characters")
    elif not _TRANSACTION_ID_RE.match(transaction_id):
        errors.append("Transaction ID contains invalid characters")

    if payment_data.method not in ALLOWED_METHODS:
        errors.append(f"Unsupported payment method '{payment_data.method}'")

    if payment_data.amount is not None and payment_data.amount <= 0:
        errors.append("Payment amount must be greater than zero")

    return PaymentValidationResponse(is_valid=not errors, errors=errors)


def _to_paise(amount: Decimal) -> int:
    # Razorpay needs the smallest currency unit
    return int((Decimal(amount) * 100).to_integral_value())


class RazorpayGateway:
    """
    Confirms payer-submitted Razorpay payment ids and issues refunds.
    Sync SDK calls run in the threadpool behind a circuit breaker.
    """

    def __init__(self, client: Optional[razorpay.Client] = None, breaker=None):
        self.client = client or razorpay.Client(
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
        )
        # Business rejections must not trip the breaker
        self.breaker = breaker or circuit_breaker_manager.get_breaker(
            "razorpay", exclude=[razorpay.errors.BadRequestError]
        )

    async def validate(self, payment_data: PaymentData) -> PaymentValidationResponse:
        return validate_payment_data(payment_data)

    async def process(self, booking_id, payment_data: PaymentData) -> GatewayResult:
        transaction_id = payment_data.transaction_id.strip()
        payment = await self._call(self.client.payment.fetch, transaction_id)

        status = payment.get("status")
        if status == "failed":
            reason = payment.get("error_reason") or ""
            return GatewayResult(
                success=False,
                transaction=payment,
                error=PaymentGatewayError(
                    payment.get("error_description") or "Payment failed at gateway",
                    permanent=reason in PERMANENT_DECLINE_REASONS,
                    code=(payment.get("error_code") or "PAYMENT_FAILED"),
                ),
            )

        if payment_data.amount is not None and payment.get("amount") != _to_paise(payment_data.amount):
            raise ValidationError(
                f"Transaction {transaction_id} amount does not match booking {booking_id}",
                field="transaction_id",
                code="AMOUNT_MISMATCH",
            )

        if status == "authorized":
            payment = await self._call(
                self.client.payment.capture,
                transaction_id,
                payment["amount"],
                {"currency": payment.get("currency", settings.PAYMENT_CURRENCY)},
            )

        if payment.get("status") != "captured":
            return GatewayResult(
                success=False,
                transaction=payment,
                error=PaymentGatewayError(
                    f"Payment {transaction_id} is '{payment.get('status')}', not captured",
                    code="PAYMENT_NOT_CAPTURED",
                ),
            )

        logger.info(f"Captured payment {transaction_id} for booking {booking_id}")
        return GatewayResult(success=True, transaction=payment)

    async def process_refund(self, transaction_id: str, refund_amount: Decimal, reason: str) -> GatewayResult:
        payment = await self._call(self.client.payment.fetch, transaction_id)
        refund_paise = _to_paise(refund_amount)
        refundable = payment.get("amount", 0) - payment.get("amount_refunded", 0)

        if refund_paise <= 0:
            raise ValidationError("Refund amount must be greater than zero", field="refund_amount")
        if refund_paise > refundable:
            raise ValidationError(
                f"Refund amount {refund_amount} exceeds refundable balance of transaction {transaction_id}",
                field="refund_amount",
                code="REFUND_EXCEEDS_PAYMENT",
            )

        refund = await self._call(
            self.client.payment.refund,
            transaction_id,
            {"amount": refund_paise, "notes": {"reason": reason[:255]}},
        )
        logger.info(f"Refund {refund.get('id')} of {refund_amount} issued for {transaction_id}")
        return GatewayResult(success=True, transaction=refund)

    async def _call(self, fn, *args):
        try:
            return await run_in_threadpool(self.breaker.call, fn, *args)
        except CircuitBreakerError as e:
            raise ServiceUnavailableError(
                "Payment gateway circuit open", code="GATEWAY_CIRCUIT_OPEN"
            ) from e
        except razorpay.errors.BadRequestError as e:
            raise PaymentGatewayError(str(e), code="BAD_REQUEST_ERROR") from e
        except razorpay.errors.GatewayError as e:
            raise PaymentGatewayError(str(e), code="GATEWAY_ERROR") from e
        except razorpay.errors.ServerError as e:
            raise ServiceUnavailableError(str(e), code="GATEWAY_SERVER_ERROR") from e
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise GatewayConnectionError(f"Payment gateway unreachable: {e}") from e
