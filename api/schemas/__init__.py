"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


# ── Enums ──────────────────────────────────────────────────

class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    GRACE_PERIOD = "grace_period"


# ── Subscription Requests ──────────────────────────────────

class PaymentCreate(BaseModel):
    payment_method: str = Field(min_length=1, max_length=10, alias="paymentMethod")
    phone_number: str | None = Field(default=None, alias="phoneNumber")
    address: str | None = None
    city: str | None = None
    postal_code: str | None = Field(default=None, alias="postalCode")

    class Config:
        populate_by_name = True

    def contact(self) -> dict:
        return self.model_dump(exclude={"payment_method"}, exclude_none=True)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500, alias="cancellation_reason")
    request_refund: bool = False

    class Config:
        populate_by_name = True


class SimulateCallbackRequest(BaseModel):
    order_id: str = Field(min_length=1)


# ── Subscription Responses ─────────────────────────────────

class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    order_id: str
    user_id: uuid.UUID
    status: SubscriptionStatus
    amount: int
    payment_method: str | None
    payment_code: str | None
    reference: str | None
    payment_url: str | None
    va_number: str | None
    qr_string: str | None
    expires_at: datetime
    paid_at: datetime | None
    subscription_start_date: datetime | None
    subscription_end_date: datetime | None
    auto_renewal_enabled: bool
    renewal_attempt_count: int
    last_renewal_attempt: datetime | None
    grace_period_start: datetime | None
    grace_period_end: datetime | None
    cancelled_at: datetime | None
    cancelled_by: str | None
    cancellation_reason: str | None
    refund_reference: str | None
    refunded_at: datetime | None
    refund_amount: int | None
    refund_status: str | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentCreated(BaseModel):
    order_id: str
    reference: str | None
    payment_url: str | None
    va_number: str | None
    qr_string: str | None
    amount: int
    expires_at: datetime
    payment_method: str | None

    class Config:
        from_attributes = True


class PaymentStatus(BaseModel):
    order_id: str
    status: SubscriptionStatus
    amount: int
    payment_method: str | None
    paid_at: datetime | None
    expires_at: datetime
    subscription_start_date: datetime | None
    subscription_end_date: datetime | None

    class Config:
        from_attributes = True
