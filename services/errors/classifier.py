"""
services/errors/classifier.py
Turns raw failures into ErrorInfo and remediation hints.

Precedence when a failure matches several categories:
    payment > validation > network > server > resource > unknown

Accepted inputs: our own BookingCoreError hierarchy, pydantic validation
errors, httpx errors, builtin connection/timeout errors, open circuit
breakers, API error payloads ({"status": 503, "error": "..."}) and plain
messages.
"""

import asyncio
import logging
import re
from collections.abc import Mapping
from typing import Any, Optional

import httpx
from pybreaker import CircuitBreakerError
from pydantic import ValidationError as PydanticValidationError

from shared.exceptions import BookingCoreError, ErrorSeverity, ErrorType
from shared.schemas.schemas import ErrorInfo

logger = logging.getLogger(__name__)


# ── Keyword patterns (used only when no HTTP status decides) ───

_PAYMENT_RE = re.compile(
    r"payment|card|declined|insufficient (funds|balance)|gateway|billing|transaction|upi|razorpay",
    re.IGNORECASE,
)
_PERMANENT_DECLINE_RE = re.compile(
    r"declined permanently|permanent(ly)? declined|stolen|lost card|fraud|do not honou?r|card blocked|account closed",
    re.IGNORECASE,
)
_VALIDATION_RE = re.compile(
    r"required|invalid|must be|missing|malformed|too (short|long)|at least|at most|format",
    re.IGNORECASE,
)
_NETWORK_RE = re.compile(
    r"network|connection|connect|timed? ?out|unreachable|econnrefused|econnreset|dns|offline|socket",
    re.IGNORECASE,
)
_SERVER_RE = re.compile(
    r"internal server error|server error|service unavailable|bad gateway|temporarily unavailable|\b5\d\d\b",
    re.IGNORECASE,
)
_RESOURCE_RE = re.compile(
    r"not available|no longer available|unavailable|\bno\b.*\bavailable\b|capacity|fully booked|already booked|conflict|slot",
    re.IGNORECASE,
)

_PAYMENT_CODES = {"PAYMENT_FAILED", "PAYMENT_DECLINED", "BAD_REQUEST_ERROR", "GATEWAY_ERROR", "CARD_DECLINED"}
_PERMANENT_CODES = {"CARD_DECLINED_PERMANENT", "FRAUD_SUSPECTED", "CARD_STOLEN", "CARD_LOST"}


# ── User-facing text ──────────────────────────────────────────

USER_MESSAGES: dict[ErrorType, str] = {
    ErrorType.PAYMENT: "Payment could not be processed. Please try again or use a different payment method.",
    ErrorType.VALIDATION: "Please check the highlighted details and try again.",
    ErrorType.NETWORK: "Unable to connect to the server. Please check your internet connection.",
    ErrorType.SERVER: "A server error occurred. Please try again in a few minutes.",
    ErrorType.RESOURCE: "The requested resource is not available. Please choose another option.",
    ErrorType.UNKNOWN: "Something went wrong. Please try again or contact support.",
}

FIELD_MESSAGES: dict[str, str] = {
    "transaction_id": "Please enter the transaction ID from your payment confirmation.",
    "patient_name": "Please enter the patient's full name.",
    "reason": "Please tell us why you are cancelling this booking.",
    "scheduled_date": "Please choose a date in the future.",
    "contact_phone": "Please enter a valid phone number.",
}

RETRY_SUGGESTIONS: dict[ErrorType, list[str]] = {
    ErrorType.PAYMENT: [
        "Check your card details and available balance or limit",
        "Make sure the billing address matches your bank records",
        "Try a different payment method",
        "Contact your bank if the payment keeps failing",
    ],
    ErrorType.NETWORK: [
        "Check your internet connection",
        "Try again in a few moments",
        "Switch to a more stable network if the problem continues",
    ],
    ErrorType.SERVER: [
        "Try again in a few minutes",
        "Contact support if the problem persists",
    ],
    ErrorType.VALIDATION: [
        "Review the highlighted fields",
        "Make sure all required information is filled in",
    ],
    ErrorType.RESOURCE: [
        "Try selecting a different hospital",
        "Consider scheduling for a different time",
        "Choose another resource type if suitable",
    ],
    ErrorType.UNKNOWN: [
        "Refresh the page and try again",
        "Contact support if the problem persists",
    ],
}

# Defaults per type: (severity, retryable)
_DEFAULTS: dict[ErrorType, tuple[ErrorSeverity, bool]] = {
    ErrorType.PAYMENT: (ErrorSeverity.HIGH, True),
    ErrorType.VALIDATION: (ErrorSeverity.MEDIUM, False),
    ErrorType.NETWORK: (ErrorSeverity.MEDIUM, True),
    ErrorType.SERVER: (ErrorSeverity.HIGH, True),
    ErrorType.RESOURCE: (ErrorSeverity.MEDIUM, False),
    ErrorType.UNKNOWN: (ErrorSeverity.LOW, False),
}


class ErrorClassifier:

    def classify(self, raw: Any) -> ErrorInfo:
        if isinstance(raw, ErrorInfo):
            return raw
        if isinstance(raw, BookingCoreError):
            return self._from_core_error(raw)
        if isinstance(raw, PydanticValidationError):
            return self._from_pydantic(raw)
        if isinstance(raw, CircuitBreakerError):
            return self._build(ErrorType.SERVER, str(raw) or "Circuit breaker open")
        if isinstance(raw, httpx.HTTPStatusError):
            return self._from_http_status(raw)
        if isinstance(raw, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return self._build(ErrorType.NETWORK, str(raw) or type(raw).__name__)
        if isinstance(raw, Mapping):
            return self._from_payload(raw)
        if isinstance(raw, str):
            return self._from_fields(status=None, code=None, message=raw, field=None)
        if isinstance(raw, BaseException):
            return self._from_fields(status=None, code=None, message=str(raw) or type(raw).__name__, field=None)

        logger.debug(f"Unclassifiable error value of type {type(raw).__name__}")
        return self._build(ErrorType.UNKNOWN, repr(raw))

    def should_auto_retry(self, info: ErrorInfo) -> bool:
        return info.retryable and info.severity != ErrorSeverity.CRITICAL

    def get_retry_suggestions(self, info: ErrorInfo) -> list[str]:
        suggestions = list(RETRY_SUGGESTIONS[ErrorType(info.type)])
        if info.type == ErrorType.PAYMENT and info.severity == ErrorSeverity.CRITICAL:
            # A hard decline won't succeed again on the same instrument
            suggestions.remove("Try a different payment method")
            suggestions.insert(0, "Use a different payment method")
        return suggestions

    # ── Sources ───────────────────────────────────────────────

    def _from_core_error(self, exc: BookingCoreError) -> ErrorInfo:
        return ErrorInfo(
            type=exc.error_type,
            severity=exc.severity,
            message=exc.message,
            user_message=exc.user_message,
            field=exc.field,
            retryable=exc.retryable,
            code=exc.code,
        )

    def _from_pydantic(self, exc: PydanticValidationError) -> ErrorInfo:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part != "body"]
        field = loc[-1] if loc else None
        message = first.get("msg", str(exc))
        return self._build(ErrorType.VALIDATION, message, field=field)

    def _from_http_status(self, exc: httpx.HTTPStatusError) -> ErrorInfo:
        response = exc.response
        payload: dict = {}
        try:
            body = response.json()
            if isinstance(body, Mapping):
                payload = dict(body)
        except ValueError:
            pass
        detail = payload.get("detail")
        if isinstance(detail, Mapping):
            payload.update(detail)
        elif isinstance(detail, str):
            payload.setdefault("message", detail)
        payload["status"] = response.status_code
        return self._from_payload(payload)

    def _from_payload(self, payload: Mapping) -> ErrorInfo:
        status = payload.get("status") or payload.get("status_code")
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        message = payload.get("error") or payload.get("message") or payload.get("description")
        if not message:
            message = f"Request failed with status {status}" if status else "Unknown error"
        return self._from_fields(
            status=status,
            code=payload.get("code"),
            message=str(message),
            field=payload.get("field"),
        )

    # ── Rules ─────────────────────────────────────────────────

    def _from_fields(
        self,
        status: Optional[int],
        code: Optional[str],
        message: str,
        field: Optional[str],
    ) -> ErrorInfo:
        code = code.upper() if isinstance(code, str) else None

        if status == 402 or code in _PAYMENT_CODES | _PERMANENT_CODES or _PAYMENT_RE.search(message):
            permanent = code in _PERMANENT_CODES or bool(_PERMANENT_DECLINE_RE.search(message))
            return self._build(ErrorType.PAYMENT, message, field=field, code=code, permanent=permanent)

        if status is not None:
            error_type = self._type_for_status(status)
        elif field or _VALIDATION_RE.search(message):
            error_type = ErrorType.VALIDATION
        elif _NETWORK_RE.search(message):
            error_type = ErrorType.NETWORK
        elif _SERVER_RE.search(message):
            error_type = ErrorType.SERVER
        elif _RESOURCE_RE.search(message):
            error_type = ErrorType.RESOURCE
        else:
            error_type = ErrorType.UNKNOWN

        return self._build(error_type, message, field=field, code=code)

    @staticmethod
    def _type_for_status(status: int) -> ErrorType:
        if status in (400, 422):
            return ErrorType.VALIDATION
        if status in (0, 408):
            return ErrorType.NETWORK
        if status >= 500 or status == 429:
            return ErrorType.SERVER
        if status in (404, 409, 410, 423):
            return ErrorType.RESOURCE
        return ErrorType.UNKNOWN

    def _build(
        self,
        error_type: ErrorType,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        permanent: bool = False,
    ) -> ErrorInfo:
        severity, retryable = _DEFAULTS[error_type]
        if permanent:
            severity, retryable = ErrorSeverity.CRITICAL, False

        user_message = USER_MESSAGES[error_type]
        if field and field in FIELD_MESSAGES:
            user_message = FIELD_MESSAGES[field]

        return ErrorInfo(
            type=error_type,
            severity=severity,
            message=message,
            user_message=user_message,
            field=field,
            retryable=retryable,
            code=code,
        )
