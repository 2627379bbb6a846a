"""Subscription ORM model: one row per premium payment attempt."""

import uuid
from datetime import datetime
from sqlalchemy import (
    String, Integer, Boolean, DateTime, ForeignKey, Text, JSON,
    Enum as SAEnum, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base

SUBSCRIPTION_STATUSES = (
    "pending", "success", "failed", "expired", "cancelled", "refunded", "grace_period",
)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
        Index("ix_subscriptions_end_auto_renewal", "subscription_end_date", "auto_renewal_enabled"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="subscription_status"),
        default="pending",
        nullable=False,
    )

    # Payment
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(10))
    payment_code: Mapped[str | None] = mapped_column(String(10))
    reference: Mapped[str | None] = mapped_column(String(100), index=True)
    payment_url: Mapped[str | None] = mapped_column(Text)
    va_number: Mapped[str | None] = mapped_column(String(50))
    qr_string: Mapped[str | None] = mapped_column(Text)
    publisher_order_id: Mapped[str | None] = mapped_column(String(100))
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Period
    subscription_start_date: Mapped[datetime | None] = mapped_column(DateTime)
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime)

    # Renewal
    auto_renewal_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    renewal_attempted: Mapped[bool] = mapped_column(Boolean, default=False)
    renewal_attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    last_renewal_attempt: Mapped[datetime | None] = mapped_column(DateTime)
    grace_period_start: Mapped[datetime | None] = mapped_column(DateTime)
    grace_period_end: Mapped[datetime | None] = mapped_column(DateTime, index=True)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancelled_by: Mapped[str | None] = mapped_column(
        SAEnum("user", "admin", "system", name="subscription_cancelled_by"),
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Refund
    refund_reference: Mapped[str | None] = mapped_column(String(100))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime)
    refund_amount: Mapped[int | None] = mapped_column(Integer)
    refund_status: Mapped[str | None] = mapped_column(
        SAEnum("pending", "processed", "failed", "rejected", name="subscription_refund_status"),
    )

    # Reminder flags, renewal links, customer snapshot
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", lazy="selectin")

    def set_flags(self, **flags) -> None:
        """Merge keys into metadata (reassigned so the JSON column is flagged dirty)."""
        self.metadata_ = {**(self.metadata_ or {}), **flags}
