"""
shared/schemas/schemas.py
Pydantic v2 value objects and request/response schemas.
Separate from ORM models: these define the API contract and the
ephemeral values (ErrorInfo, RefundDecision) passed between components.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.exceptions import ErrorSeverity, ErrorType
from shared.models.models import (
    BookingStatus,
    DeliveryStatus,
    EventType,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    PaymentStatus,
    ResourceType,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Core value objects ────────────────────────────────────────

class ErrorInfo(BaseModel):
    """Classified failure. Created per failure, never persisted."""
    model_config = ConfigDict(frozen=True)

    type: ErrorType
    severity: ErrorSeverity
    message: str
    user_message: str
    field: Optional[str] = None
    retryable: bool = False
    code: Optional[str] = None


class RefundDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Literal[0, 50, 80]
    refund_amount: Decimal
    eligible: bool
    hours_until: Optional[float] = None


# ── Booking ───────────────────────────────────────────────────

class PaymentResponse(BaseSchema):
    id: uuid.UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    transaction_id: Optional[str]
    paid_at: Optional[datetime]
    refund_amount: Optional[Decimal]
    refund_id: Optional[str]
    refunded_at: Optional[datetime]


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_reference: str
    user_id: uuid.UUID
    hospital_id: uuid.UUID
    resource_type: ResourceType
    patient_name: str
    scheduled_date: datetime
    estimated_duration_hours: float
    status: BookingStatus
    cancellation_reason: Optional[str]
    decline_reason: Optional[str]
    approved_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    payment: Optional[PaymentResponse] = None


class BookingCancelRequest(BaseSchema):
    reason: str = Field(..., max_length=1000)
    request_refund: bool = True


class BookingDeclineRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=1000)


class CancellationResponse(BaseSchema):
    booking: BookingResponse
    refund: Optional[RefundDecision] = None
    refund_processed: bool = False
    refund_error: Optional[ErrorInfo] = None


class RefundQuoteResponse(BaseSchema):
    booking_id: uuid.UUID
    decision: RefundDecision


# ── Payment ───────────────────────────────────────────────────

class PaymentData(BaseSchema):
    """What the payer submits. Manual transaction references are 3-100 chars."""
    transaction_id: str = ""
    method: str = Field("upi", max_length=30)
    amount: Optional[Decimal] = Field(None, ge=0)


class PaymentValidationResponse(BaseSchema):
    is_valid: bool
    errors: list[str] = []


class PaymentSessionBeginRequest(BaseSchema):
    purpose: Literal["charge", "refund"] = "charge"
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class PaymentSubmitRequest(BaseSchema):
    transaction_id: str = ""
    method: str = "upi"

    @field_validator("transaction_id")
    @classmethod
    def strip_transaction_id(cls, v: str) -> str:
        return v.strip()


class PaymentSessionResponse(BaseSchema):
    booking_id: uuid.UUID
    attempt_id: uuid.UUID
    purpose: str
    state: str
    amount: Decimal
    retry_count: int
    max_attempts: int
    next_retry_in: int
    retry_available: bool
    last_error: Optional[ErrorInfo] = None
    suggestions: list[str] = []
    transaction_id: Optional[str] = None


# ── Notifications ─────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    type: EventType
    channel: NotificationChannel
    status: DeliveryStatus
    priority: NotificationPriority
    title: str
    body: str
    created_at: datetime
    delivered_at: Optional[datetime]
    last_error: Optional[str]
    is_read: bool
    read_at: Optional[datetime]


class NotificationFilter(BaseSchema):
    unread_only: bool = False
    channel: Optional[NotificationChannel] = None
    status: Optional[DeliveryStatus] = None
    type: Optional[EventType] = None
    booking_id: Optional[uuid.UUID] = None
    since: Optional[datetime] = None
    page: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)


class UnreadCountResponse(BaseSchema):
    unread_count: int


class ChannelToggleRequest(BaseSchema):
    enabled: bool


class PreferencesResponse(BaseSchema):
    user_id: uuid.UUID
    email_enabled: bool
    sms_enabled: bool
    push_enabled: bool
    event_channels: dict[NotificationCategory, dict[NotificationChannel, bool]]


class PreferencesUpdateRequest(BaseSchema):
    email_enabled: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    # Missing cells fall back to the defaults
    event_channels: dict[NotificationCategory, dict[NotificationChannel, bool]] = {}
