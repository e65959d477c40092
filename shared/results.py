"""
shared/results.py
Explicit outcome objects returned by lifecycle and payment operations.
Callers inspect `ok` / `error`; `raise_for_error()` is there for code that
prefers exceptions (e.g. routers that map them to HTTP responses).
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from shared.schemas.schemas import ErrorInfo, RefundDecision

if TYPE_CHECKING:
    from shared.events import DomainEvent
    from shared.models.models import Booking
    from services.payment.orchestrator import PaymentSession


@dataclass
class OperationResult:
    ok: bool
    error: Optional[ErrorInfo] = None
    exception: Optional[Exception] = None

    def raise_for_error(self) -> None:
        if not self.ok and self.exception is not None:
            raise self.exception


@dataclass
class LifecycleResult(OperationResult):
    booking: Optional["Booking"] = None
    events: list["DomainEvent"] = field(default_factory=list)


@dataclass
class CancellationResult(LifecycleResult):
    """
    Cancellation outcome. `ok` reflects the cancellation only; a refund that
    failed afterwards is reported in `refund_error` and never flips `ok`.
    """
    refund_decision: Optional[RefundDecision] = None
    refund_processed: bool = False
    refund_error: Optional[ErrorInfo] = None


@dataclass
class SessionResult(OperationResult):
    session: Optional["PaymentSession"] = None
    # False when a submit was a no-op (empty transaction id or wrong state)
    accepted: bool = True
