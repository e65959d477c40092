"""
shared/exceptions.py
Typed failures raised by the booking core and its adapters.

Every exception carries its own classification (type, severity, retryable,
user-facing message) so ErrorClassifier can turn it into an ErrorInfo without
string matching.
"""

from enum import Enum as PyEnum
from typing import Optional


class ErrorType(str, PyEnum):
    VALIDATION = "validation"
    NETWORK = "network"
    SERVER = "server"
    RESOURCE = "resource"
    PAYMENT = "payment"
    UNKNOWN = "unknown"


class ErrorSeverity(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BookingCoreError(Exception):
    """Base class for every failure the core knows how to classify."""

    error_type: ErrorType = ErrorType.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.LOW
    retryable: bool = False
    user_message: str = "Something went wrong. Please try again or contact support."

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        code: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code
        if user_message:
            self.user_message = user_message


# ── Local / state errors ──────────────────────────────────────

class ValidationError(BookingCoreError):
    error_type = ErrorType.VALIDATION
    severity = ErrorSeverity.MEDIUM
    user_message = "Please check the highlighted details and try again."


class InvalidStateError(BookingCoreError):
    """Operation not allowed from the current lifecycle or payment state."""
    error_type = ErrorType.VALIDATION
    severity = ErrorSeverity.MEDIUM
    user_message = "This action is no longer available for this booking."

    def __init__(self, message: str, *, current: Optional[str] = None, **kwargs):
        kwargs.setdefault("code", "INVALID_STATE")
        super().__init__(message, **kwargs)
        self.current = current


class RetryNotReadyError(InvalidStateError):
    user_message = "Please wait for the retry countdown to finish."

    def __init__(self, retry_in: int):
        super().__init__(
            f"Retry not allowed for another {retry_in}s",
            code="RETRY_NOT_READY",
        )
        self.retry_in = retry_in


class RetryExhaustedError(InvalidStateError):
    user_message = "Maximum payment attempts reached. Please start a new payment."

    def __init__(self, attempts: int):
        super().__init__(
            f"Payment attempt exhausted after {attempts} failures",
            code="RETRY_EXHAUSTED",
        )
        self.attempts = attempts


class BookingBusyError(InvalidStateError):
    user_message = "This booking is being updated. Please try again in a moment."

    def __init__(self, booking_id: str):
        super().__init__(
            f"Booking {booking_id} is locked by another operation",
            code="BOOKING_BUSY",
        )


# ── Not found ─────────────────────────────────────────────────

class NotFoundError(BookingCoreError):
    error_type = ErrorType.RESOURCE
    severity = ErrorSeverity.MEDIUM
    user_message = "The requested item could not be found."


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id):
        super().__init__(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")


class NotificationNotFoundError(NotFoundError):
    def __init__(self, notification_id):
        super().__init__(
            f"Notification {notification_id} not found", code="NOTIFICATION_NOT_FOUND"
        )


# ── Downstream errors ─────────────────────────────────────────

class PaymentGatewayError(BookingCoreError):
    """
    Gateway rejected or failed the charge/refund.
    A permanent failure (hard decline, fraud block) is critical and never retried.
    """
    error_type = ErrorType.PAYMENT
    severity = ErrorSeverity.HIGH
    retryable = True
    user_message = "Payment could not be processed. Please try again or use a different payment method."

    def __init__(self, message: str, *, permanent: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.permanent = permanent
        if permanent:
            self.severity = ErrorSeverity.CRITICAL
            self.retryable = False


class GatewayConnectionError(BookingCoreError):
    error_type = ErrorType.NETWORK
    severity = ErrorSeverity.MEDIUM
    retryable = True
    user_message = "Unable to connect to the server. Please check your internet connection."


class ServiceUnavailableError(BookingCoreError):
    error_type = ErrorType.SERVER
    severity = ErrorSeverity.HIGH
    retryable = True
    user_message = "The service is temporarily unavailable. Please try again in a few moments."


class ResourceUnavailableError(BookingCoreError):
    error_type = ErrorType.RESOURCE
    severity = ErrorSeverity.MEDIUM
    user_message = "The requested resource is not available. Please choose another option."


class ChannelDeliveryError(BookingCoreError):
    """A single channel (email, sms, push) failed to deliver."""
    error_type = ErrorType.NETWORK
    severity = ErrorSeverity.MEDIUM
    retryable = True
    user_message = "We could not deliver this notification."

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}", code="DELIVERY_FAILED")
        self.channel = channel
