"""
shared/utils/errors.py
Maps booking-core failures onto HTTP responses.
The body carries the classified ErrorInfo plus retry suggestions so clients
can render the same message the core decided on.
"""

from typing import Optional

from fastapi import HTTPException, status

from services.errors.classifier import ErrorClassifier
from shared.exceptions import (
    BookingCoreError,
    GatewayConnectionError,
    InvalidStateError,
    NotFoundError,
    PaymentGatewayError,
    ResourceUnavailableError,
    RetryNotReadyError,
    ServiceUnavailableError,
    ValidationError,
)
from shared.results import OperationResult
from shared.schemas.schemas import ErrorInfo

# First match wins, so subclasses go before their bases
_STATUS_BY_ERROR: list[tuple[type[BookingCoreError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RetryNotReadyError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PaymentGatewayError, status.HTTP_402_PAYMENT_REQUIRED),
    (GatewayConnectionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ServiceUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ResourceUnavailableError, status.HTTP_409_CONFLICT),
]

_classifier = ErrorClassifier()


def status_for(exc: Optional[BaseException]) -> int:
    for error_cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return code
    return status.HTTP_400_BAD_REQUEST


def error_detail(info: ErrorInfo, classifier: Optional[ErrorClassifier] = None) -> dict:
    classifier = classifier or _classifier
    detail = info.model_dump(mode="json")
    detail["suggestions"] = classifier.get_retry_suggestions(info)
    return detail


def to_http_exception(exc: BaseException, info: Optional[ErrorInfo] = None) -> HTTPException:
    info = info or _classifier.classify(exc)
    headers = None
    if isinstance(exc, RetryNotReadyError):
        headers = {"Retry-After": str(exc.retry_in)}
    return HTTPException(status_code=status_for(exc), detail=error_detail(info), headers=headers)


def raise_for_result(result: OperationResult) -> None:
    """Raise the matching HTTPException for a failed result; no-op on success."""
    if result.ok:
        return
    raise to_http_exception(result.exception, result.error)
