"""
services/refund/policy.py
Time-based refund tiers for cancelled bookings.

    more than 24h before the scheduled date   -> 80% of the paid amount
    more than 12h, up to and including 24h    -> 50%
    12h or less                               -> nothing

Both boundaries are exclusive: exactly 24.0h lands in the 50% tier and
exactly 12.0h lands in the 0% tier.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from shared.models.models import PaymentStatus
from shared.schemas.schemas import RefundDecision

_CENT = Decimal("0.01")
_SECONDS_PER_HOUR = Decimal(3600)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def hours_between(start: datetime, end: datetime) -> Decimal:
    delta = _as_utc(end) - _as_utc(start)
    # timedelta keeps integer microseconds, so this is exact
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return Decimal(micros) / Decimal(1_000_000) / _SECONDS_PER_HOUR


class RefundPolicyEngine:
    """Pure and deterministic: the same inputs always yield the same decision."""

    # (exclusive lower bound in hours, percent), checked top-down
    TIERS: tuple[tuple[int, int], ...] = ((24, 80), (12, 50))

    def decide(
        self,
        scheduled_date: datetime,
        now: datetime,
        paid_amount: Union[Decimal, int, float, str],
        payment_status: Optional[Union[PaymentStatus, str]],
    ) -> RefundDecision:
        hours_until = hours_between(now, scheduled_date)

        if payment_status is None or PaymentStatus(payment_status) != PaymentStatus.PAID:
            return RefundDecision(
                tier=0,
                refund_amount=Decimal("0.00"),
                eligible=False,
                hours_until=float(hours_until),
            )

        amount = Decimal(str(paid_amount))
        tier = self.tier_for(hours_until)
        refund_amount = (amount * tier / 100).quantize(_CENT, rounding=ROUND_HALF_UP)

        return RefundDecision(
            tier=tier,
            refund_amount=refund_amount,
            eligible=refund_amount > 0,
            hours_until=float(hours_until),
        )

    def tier_for(self, hours_until: Decimal) -> int:
        for threshold, percent in self.TIERS:
            if hours_until > threshold:
                return percent
        return 0
