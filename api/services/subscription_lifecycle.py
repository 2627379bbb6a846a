"""
Subscription Lifecycle: payment, activation, renewal, grace period, cancellation, refund.

Rules:
  - One paid period lasts 30 days: subscription_end_date = subscription_start_date + 30 days
  - Full refund only within 5 days of payment (days counted with floor)
  - Reminders at 7, 3 and 1 days before the end date, each sent once per period
  - Renewal payment is created 1 day before the end date; 3 failed attempts → 3-day grace period
  - Grace period over without payment → expired, user downgraded to `verified`
  - Every transition mutates the loaded rows and commits once

The gateway, notifier and clock are injected so the daily scans can run against fakes.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings as default_settings
from models.subscription import Subscription
from models.user import User
from services.clock import Clock, SystemClock
from services.duitku import TRANSACTION_STATUS, Customer, parse_settlement_date
from services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidSignature,
    NotFoundError,
    RefundWindowExpired,
    UpstreamError,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_DAYS = 30
REFUND_WINDOW_DAYS = 5
GRACE_PERIOD_DAYS = 3
MAX_RENEWAL_ATTEMPTS = 3
REMINDER_THRESHOLDS = (7, 3, 1)
ENDING_NOTICE_DAYS = 3
RENEWAL_LEAD = timedelta(days=1)

PREMIUM_ROLE = "verified_premium"
DOWNGRADE_ROLE = "verified"

PAYMENT_METHOD_NAMES = {
    "SP": "ShopeePay",
    "DA": "DANA",
    "OV": "OVO",
    "BC": "BCA Virtual Account",
    "M2": "Mandiri Virtual Account",
    "BN": "BNI Virtual Account",
    "BR": "BRI Virtual Account",
    "AG": "Bank Transfer",
    "VA": "Virtual Account",
    "FT": "Retail Store",
    "I1": "BCA KlikPay",
    "CC": "Credit Card",
    "SA": "Shopee Pay Apps",
    "LF": "LinkAja Fixed Fee",
    "LA": "LinkAja",
    "A1": "A1 Payment",
    "NC": "NFC",
    "QR": "QRIS",
}

PAYMENT_METHOD_GROUPS = {
    "virtual_account": ("BC", "M2", "VA", "I1", "B1", "BT", "A1", "AG", "NC", "BR", "S1", "DM", "BV"),
    "e_wallet": ("OV", "SA", "LF", "LA", "DA", "SL", "OL"),
    "retail": ("FT", "IR"),
    "qris": ("SP", "NQ", "GQ", "SQ"),
    "credit_card": ("VC",),
    "paylater": ("DN", "AT"),
}

_DAY_SECONDS = 24 * 60 * 60


# ── Pure helpers ───────────────────────────────────────────

def days_since(start: datetime, now: datetime) -> int:
    """Whole days elapsed since `start` (floor)."""
    return math.floor((now - start).total_seconds() / _DAY_SECONDS)


def days_until(end: datetime, now: datetime) -> int:
    """Days left until `end`, a partial day counting as one (ceil)."""
    return math.ceil((end - now).total_seconds() / _DAY_SECONDS)


def can_refund(paid_at: datetime | None, now: datetime) -> bool:
    if paid_at is None:
        return False
    return days_since(paid_at, now) <= REFUND_WINDOW_DAYS


def reminder_flag(days: int) -> str:
    return f"reminder_{days}_day_sent" if days == 1 else f"reminder_{days}_days_sent"


def epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def order_user_key(user_id) -> str:
    """First 24 hex digits of the user UUID; Duitku caps merchantOrderId at 50 characters."""
    return uuid.UUID(str(user_id)).hex[:24]


def payment_order_id(user_id, now: datetime) -> str:
    return f"SUB-{order_user_key(user_id)}-{epoch_ms(now)}"


def renewal_order_id(user_id, period_end: datetime) -> str:
    """One id per renewed period, so a retried renewal finds its earlier record."""
    return f"SUB-RENEW-{order_user_key(user_id)}-{epoch_ms(period_end)}"


def payment_method_name(code: str | None) -> str:
    return PAYMENT_METHOD_NAMES.get(code or "", code or "Unknown")


def payment_method_group(code: str) -> str:
    for group, codes in PAYMENT_METHOD_GROUPS.items():
        if code in codes:
            return group
    return "other"


def access_clause(now: datetime):
    """SQL form of grants_access()."""
    return or_(
        and_(
            Subscription.status.in_(("success", "cancelled")),
            Subscription.subscription_end_date > now,
        ),
        and_(
            Subscription.status == "grace_period",
            Subscription.grace_period_end > now,
        ),
        and_(
            Subscription.status == "success",
            Subscription.auto_renewal_enabled.is_(True),
            Subscription.renewal_attempt_count > 0,
            Subscription.subscription_end_date > now - timedelta(days=GRACE_PERIOD_DAYS),
        ),
    )


def grants_access(sub: Subscription, now: datetime) -> bool:
    """
    Whether a record keeps premium access at `now`.

    A cancelled record keeps access until its end date. A success record whose
    renewal is still being retried keeps access for up to GRACE_PERIOD_DAYS past its end.
    """
    end = sub.subscription_end_date
    if sub.status in ("success", "cancelled") and end and end > now:
        return True
    if sub.status == "grace_period" and sub.grace_period_end and sub.grace_period_end > now:
        return True
    return bool(
        sub.status == "success"
        and sub.auto_renewal_enabled
        and (sub.renewal_attempt_count or 0) > 0
        and end
        and end > now - timedelta(days=GRACE_PERIOD_DAYS)
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _customer_for(user: User, contact: dict | None = None) -> Customer:
    contact = contact or {}
    parts = (user.name or "").split(" ")
    first_name = parts[0] or user.username
    last_name = " ".join(parts[1:]) or user.username
    return Customer(
        first_name=first_name,
        last_name=last_name,
        email=user.email,
        phone=contact.get("phone_number") or user.phone or "-",
        address=contact.get("address") or "Indonesia",
        city=contact.get("city") or "Jakarta",
        postal_code=contact.get("postal_code") or "10000",
    )


class SubscriptionLifecycle:
    def __init__(self, gateway, notifier, clock: Clock | None = None, settings=default_settings):
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.settings = settings

    def now(self) -> datetime:
        return self.clock.now()

    # ── Queries ────────────────────────────────────────────

    async def _get_by_order(self, db: AsyncSession, order_id: str) -> Subscription | None:
        result = await db.execute(select(Subscription).where(Subscription.order_id == order_id))
        return result.scalar_one_or_none()

    async def _latest(self, db: AsyncSession, user_id, statuses: tuple[str, ...]) -> Subscription | None:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status.in_(statuses))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _access_record(self, db: AsyncSession, user_id, now: datetime) -> Subscription | None:
        result = await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, access_clause(now))
            .order_by(Subscription.subscription_end_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_access(self, db: AsyncSession, user_id, now: datetime | None = None) -> bool:
        return await self._access_record(db, user_id, now or self.now()) is not None

    async def _user_of(self, db: AsyncSession, sub: Subscription) -> User:
        # Records created in this session have no loaded `user`; get() hits the identity map first.
        return await db.get(User, sub.user_id)

    # ── Payment ────────────────────────────────────────────

    async def create_payment(
        self,
        db: AsyncSession,
        user: User,
        payment_method: str,
        contact: dict | None = None,
    ) -> Subscription:
        """
        Start a one-month premium payment.

        Raises:
            ConflictError: user is already premium, or has an unexpired pending payment.
            UpstreamError: the gateway refused or could not be reached; nothing is stored.
        """
        now = self.now()

        if user.role == PREMIUM_ROLE:
            access = await self._access_record(db, user.id, now)
            # A user in their grace period may pay to keep premium.
            if access is None or access.status != "grace_period":
                raise ConflictError("You already have premium subscription")

        result = await db.execute(
            select(Subscription).where(
                Subscription.user_id == user.id,
                Subscription.status == "pending",
                Subscription.expires_at > now,
            ).limit(1)
        )
        pending = result.scalar_one_or_none()
        if pending:
            raise ConflictError(
                "You already have a pending payment",
                data={
                    "order_id": pending.order_id,
                    "payment_url": pending.payment_url,
                    "expires_at": _iso(pending.expires_at),
                },
            )

        order_id = payment_order_id(user.id, now)
        amount = self.settings.SUBSCRIPTION_PRICE
        expiry_minutes = self.settings.PAYMENT_EXPIRY_MINUTES

        transaction = await self.gateway.create_transaction(
            order_id=order_id,
            amount=amount,
            payment_method=payment_method,
            customer=_customer_for(user, contact),
            callback_url=self.settings.callback_url,
            return_url=self.settings.return_url,
            expiry_minutes=expiry_minutes,
        )
        if not transaction.success:
            raise UpstreamError(transaction.message or "Failed to create payment")

        data = transaction.data
        sub = Subscription(
            user_id=user.id,
            order_id=order_id,
            status="pending",
            amount=amount,
            payment_method=payment_method,
            reference=data.get("reference"),
            payment_url=data.get("payment_url"),
            va_number=data.get("va_number"),
            qr_string=data.get("qr_string"),
            expires_at=now + timedelta(minutes=expiry_minutes),
            metadata_={
                "customer_name": user.name,
                "customer_email": user.email,
                "customer_username": user.username,
            },
            created_at=now,
            updated_at=now,
        )
        db.add(sub)
        await db.commit()

        logger.info("Payment %s created for user %s via %s", order_id, user.id, payment_method)
        return sub

    async def handle_callback(self, db: AsyncSession, payload: dict) -> Subscription:
        """Verify a gateway callback and apply its result to the order it names."""
        verified = self.gateway.verify_callback(payload)
        if not verified.success:
            logger.warning("Rejected callback for order %s: %s", payload.get("merchantOrderId"), verified.message)
            raise InvalidSignature(verified.message or "Invalid signature")

        data = verified.data
        sub = await self._get_by_order(db, data["merchant_order_id"])
        if sub is None:
            logger.warning("Callback for unknown order %s", data["merchant_order_id"])
            raise NotFoundError("Order not found")

        if data["amount"] != sub.amount:
            logger.warning(
                "Callback amount mismatch for %s: expected=%s got=%s",
                sub.order_id, sub.amount, data["amount"],
            )

        return await self.apply_payment_result(
            db,
            sub,
            data["status"],
            reference=data.get("reference"),
            payment_code=data.get("payment_code"),
            publisher_order_id=data.get("publisher_order_id"),
            settlement_date=parse_settlement_date(data.get("settlement_date")),
        )

    async def apply_payment_result(
        self,
        db: AsyncSession,
        sub: Subscription,
        status: str,
        reference: str | None = None,
        payment_code: str | None = None,
        publisher_order_id: str | None = None,
        settlement_date: datetime | None = None,
    ) -> Subscription:
        """
        Move a pending record to success/failed.

        Settled records are returned untouched so repeated callbacks are harmless.
        An expired record that was never paid may still be confirmed by the gateway.
        """
        movable = sub.status == "pending" or (
            sub.status == "expired" and sub.paid_at is None and status == "success"
        )
        if not movable:
            logger.info("Order %s already %s, ignoring %s result", sub.order_id, sub.status, status)
            return sub

        now = self.now()
        if reference and not sub.reference:
            sub.reference = reference
        if payment_code:
            sub.payment_code = payment_code
        if publisher_order_id:
            sub.publisher_order_id = publisher_order_id
        if settlement_date:
            sub.settlement_date = settlement_date
        sub.updated_at = now

        if status == "success":
            user = await self._user_of(db, sub)
            sub.status = "success"
            sub.paid_at = now
            sub.subscription_start_date = now
            sub.subscription_end_date = now + timedelta(days=SUBSCRIPTION_DAYS)
            user.role = PREMIUM_ROLE
            await self._close_replaced_records(db, sub, now)
            await db.commit()
            logger.info("Subscription %s activated for user %s", sub.order_id, sub.user_id)
            await self.notifier.subscription_activated(user, sub)
        elif status == "failed":
            sub.status = "failed"
            await db.commit()
            logger.info("Payment %s failed", sub.order_id)
        else:
            await db.commit()

        return sub

    async def _close_replaced_records(self, db: AsyncSession, paid: Subscription, now: datetime) -> None:
        """Expire the record a paid renewal replaces, and any grace period it ends."""
        previous_order_id = (paid.metadata_ or {}).get("previous_order_id")
        result = await db.execute(
            select(Subscription).where(
                Subscription.user_id == paid.user_id,
                Subscription.id != paid.id,
                or_(
                    Subscription.status == "grace_period",
                    and_(
                        Subscription.status == "success",
                        Subscription.order_id == (previous_order_id or ""),
                    ),
                ),
            )
        )
        for old in result.scalars().all():
            old.status = "expired"
            old.updated_at = now
            old.set_flags(superseded_by=paid.order_id)
            logger.info("Subscription %s superseded by %s", old.order_id, paid.order_id)

    async def check_status(self, db: AsyncSession, user: User, order_id: str) -> Subscription:
        """Return the user's own order, refreshing a live pending payment from the gateway."""
        result = await db.execute(
            select(Subscription).where(
                Subscription.order_id == order_id,
                Subscription.user_id == user.id,
            )
        )
        sub = result.scalar_one_or_none()
        if sub is None:
            raise NotFoundError("Subscription not found")

        now = self.now()
        if sub.status == "pending" and sub.expires_at > now:
            status = await self.gateway.check_transaction_status(order_id)
            if status.success:
                mapped = TRANSACTION_STATUS.get(status.data.get("status_code"))
                if mapped:
                    await self.apply_payment_result(
                        db, sub, mapped, reference=status.data.get("reference"),
                    )
            else:
                logger.warning("Status check for %s failed: %s", order_id, status.message)

        if sub.status == "pending" and sub.expires_at <= now:
            sub.status = "expired"
            sub.updated_at = now
            await db.commit()
            logger.info("Pending payment %s expired", order_id)

        return sub

    async def simulate_callback(self, db: AsyncSession, order_id: str) -> Subscription:
        """Feed a correctly signed success callback for `order_id` (sandbox only)."""
        if self.settings.is_production:
            raise ForbiddenError("Callback simulation is disabled in production")

        sub = await self._get_by_order(db, order_id)
        if sub is None:
            raise NotFoundError("Order not found")

        amount = str(sub.amount)
        payload = {
            "merchantCode": self.gateway.merchant_code,
            "amount": amount,
            "merchantOrderId": order_id,
            "productDetail": "Snaplove Premium Subscription",
            "paymentCode": sub.payment_method,
            "resultCode": "00",
            "reference": sub.reference or f"SIM-{order_id}",
            "signature": self.gateway.sign_callback(amount, order_id),
        }
        logger.info("Simulating success callback for %s", order_id)
        return await self.handle_callback(db, payload)

    # ── Cancellation & refund ──────────────────────────────

    async def cancel(
        self,
        db: AsyncSession,
        user: User,
        reason: str | None = None,
        request_refund: bool = False,
    ) -> Subscription:
        """
        Cancel the user's current subscription, optionally with a full refund.

        Raises:
            NotFoundError: no paid subscription.
            ConflictError: already cancelled or refunded.
            RefundWindowExpired: refund asked more than 5 days after payment.
            UpstreamError: the refund was refused; the subscription is unchanged.
        """
        sub = await self._latest(db, user.id, ("success", "cancelled", "refunded"))
        if sub is None:
            raise NotFoundError("No active subscription found")
        if sub.status == "cancelled":
            raise ConflictError("Subscription is already cancelled")
        if sub.status == "refunded":
            raise ConflictError("Subscription has already been refunded")

        now = self.now()
        reason = reason or "User requested cancellation"

        if request_refund:
            if not can_refund(sub.paid_at, now):
                days = days_since(sub.paid_at, now) if sub.paid_at else None
                deadline = sub.paid_at + timedelta(days=REFUND_WINDOW_DAYS) if sub.paid_at else None
                raise RefundWindowExpired(
                    "Refund is only available within 5 days of payment",
                    days_since_payment=days,
                    refund_deadline=_iso(deadline),
                )

            refund = await self.gateway.request_refund(sub.reference, sub.amount, reason)
            if not refund.success:
                raise UpstreamError(refund.message or "Refund request failed")

            sub.status = "refunded"
            sub.refund_reference = refund.data.get("refund_reference")
            sub.refund_status = refund.data.get("status", "processed")
            sub.refund_amount = sub.amount
            sub.refunded_at = now
            user.role = DOWNGRADE_ROLE
        else:
            sub.status = "cancelled"

        sub.cancelled_at = now
        sub.cancelled_by = "user"
        sub.cancellation_reason = reason
        sub.auto_renewal_enabled = False
        sub.updated_at = now
        await db.commit()

        logger.info("Subscription %s %s by user %s", sub.order_id, sub.status, user.id)
        await self.notifier.cancellation_confirmed(user, sub, refunded=request_refund)
        return sub

    async def set_auto_renewal(self, db: AsyncSession, user: User, enabled: bool) -> Subscription:
        sub = await self._latest(db, user.id, ("success", "cancelled"))
        if sub is None:
            raise NotFoundError("No active subscription found")

        now = self.now()
        if enabled:
            if sub.subscription_end_date is None or sub.subscription_end_date <= now:
                raise ConflictError("Subscription period has already ended")
            sub.renewal_attempted = False
            sub.renewal_attempt_count = 0
            sub.set_flags(
                **{reminder_flag(days): False for days in REMINDER_THRESHOLDS},
                ending_notification_sent=False,
            )
            if sub.status == "cancelled":
                sub.status = "success"
                sub.cancelled_at = None
                sub.cancelled_by = None
                sub.cancellation_reason = None

        sub.auto_renewal_enabled = enabled
        sub.updated_at = now
        await db.commit()

        logger.info("Auto-renewal %s for %s", "enabled" if enabled else "disabled", sub.order_id)
        return sub

    async def refund_eligibility(self, db: AsyncSession, user: User) -> dict:
        sub = await self._latest(db, user.id, ("success", "cancelled"))
        if sub is None:
            raise NotFoundError("No active subscription found")

        now = self.now()
        if sub.paid_at is None:
            return {
                "eligible": False,
                "days_since_payment": None,
                "days_remaining": 0,
                "refund_amount": 0,
                "refund_deadline": None,
                "paid_at": None,
                "message": "Refund period has expired. You can still cancel to stop auto-renewal.",
            }

        elapsed = days_since(sub.paid_at, now)
        eligible = can_refund(sub.paid_at, now)
        remaining = max(0, REFUND_WINDOW_DAYS - elapsed)
        if eligible:
            message = f"You have {remaining} day(s) left to request a full refund"
        else:
            message = "Refund period has expired. You can still cancel to stop auto-renewal."

        return {
            "eligible": eligible,
            "days_since_payment": elapsed,
            "days_remaining": remaining,
            "refund_amount": sub.amount if eligible else 0,
            "refund_deadline": sub.paid_at + timedelta(days=REFUND_WINDOW_DAYS),
            "paid_at": sub.paid_at,
            "message": message,
        }

    # ── Read views ─────────────────────────────────────────

    async def details(self, db: AsyncSession, user: User) -> dict:
        sub = await self._latest(db, user.id, ("success", "cancelled", "grace_period", "refunded"))
        if sub is None:
            raise NotFoundError("No subscription found")

        now = self.now()
        elapsed = 0
        refundable = False
        if sub.paid_at:
            elapsed = days_since(sub.paid_at, now)
            refundable = can_refund(sub.paid_at, now) and sub.status not in ("refunded", "grace_period")

        grace_days = 0
        if sub.status == "grace_period" and sub.grace_period_end:
            grace_days = max(0, days_until(sub.grace_period_end, now))

        return {
            "order_id": sub.order_id,
            "status": sub.status,
            "amount": sub.amount,
            "payment_method": payment_method_name(sub.payment_method),
            "payment_method_code": sub.payment_method,
            "paid_at": sub.paid_at,
            "subscription_start_date": sub.subscription_start_date,
            "subscription_end_date": sub.subscription_end_date,
            "next_billing_date": sub.subscription_end_date,
            "cancelled_at": sub.cancelled_at,
            "refunded_at": sub.refunded_at,
            "auto_renewal_enabled": sub.auto_renewal_enabled,
            "days_until_renewal": days_until(sub.subscription_end_date, now) if sub.subscription_end_date else 0,
            "can_cancel": sub.status in ("success", "cancelled"),
            "cancellation_reason": sub.cancellation_reason,
            "can_refund": refundable,
            "days_since_payment": elapsed,
            "days_until_refund_deadline": REFUND_WINDOW_DAYS - elapsed,
            "refund_deadline": sub.paid_at + timedelta(days=REFUND_WINDOW_DAYS) if sub.paid_at else None,
            "refund_amount": sub.refund_amount,
            "refund_reference": sub.refund_reference,
            "refund_status": sub.refund_status,
            "grace_period_start": sub.grace_period_start,
            "grace_period_end": sub.grace_period_end,
            "grace_period_days_remaining": grace_days,
            "renewal_attempt_count": sub.renewal_attempt_count or 0,
            "last_renewal_attempt": sub.last_renewal_attempt,
            "created_at": sub.created_at,
            "updated_at": sub.updated_at,
        }

    async def current(self, db: AsyncSession, user: User) -> dict:
        """Active premium record, if any. Never changes state."""
        now = self.now()
        sub = await self._access_record(db, user.id, now)
        if sub is None:
            return {"has_subscription": False, "role": user.role}

        access_end = sub.grace_period_end if sub.status == "grace_period" else sub.subscription_end_date
        return {
            "has_subscription": True,
            "subscription": {
                "order_id": sub.order_id,
                "status": sub.status,
                "started_at": sub.subscription_start_date,
                "expires_at": sub.subscription_end_date,
                "grace_period_end": sub.grace_period_end,
                "remaining_days": max(0, days_until(access_end, now)),
                "auto_renewal_enabled": sub.auto_renewal_enabled,
                "payment_method": sub.payment_method,
                "amount": sub.amount,
            },
            "role": user.role,
        }

    async def history(
        self,
        db: AsyncSession,
        user: User,
        page: int = 1,
        limit: int = 10,
        status: str | None = None,
    ) -> tuple[list[Subscription], int]:
        filters = [Subscription.user_id == user.id]
        if status:
            filters.append(Subscription.status == status)

        total = await db.scalar(select(func.count()).select_from(Subscription).where(*filters))
        result = await db.execute(
            select(Subscription)
            .where(*filters)
            .order_by(Subscription.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def payment_methods(self) -> dict:
        amount = self.settings.SUBSCRIPTION_PRICE
        result = await self.gateway.get_payment_methods(amount)
        if not result.success:
            raise UpstreamError(result.message or "Failed to load payment methods")

        methods = []
        for item in result.data:
            try:
                fee = int(float(item.get("totalFee") or 0))
            except (TypeError, ValueError):
                fee = 0
            methods.append({
                "code": item.get("paymentMethod"),
                "name": item.get("paymentName"),
                "image": item.get("paymentImage"),
                "fee": fee,
                "total_amount": amount + fee,
            })

        grouped = {group: [] for group in (*PAYMENT_METHOD_GROUPS, "other")}
        for method in methods:
            grouped[payment_method_group(method["code"] or "")].append(method)

        return {"amount": amount, "methods": methods, "grouped": grouped}

    # ── Scheduled scans ────────────────────────────────────

    async def send_upcoming_renewal_reminders(self, db: AsyncSession) -> int:
        now = self.now()
        horizon = now + timedelta(days=max(REMINDER_THRESHOLDS))
        result = await db.execute(
            select(Subscription).where(
                Subscription.status == "success",
                Subscription.auto_renewal_enabled.is_(True),
                Subscription.subscription_end_date > now,
                Subscription.subscription_end_date <= horizon,
            )
        )
        sent = 0
        for sub in result.scalars().all():
            days = days_until(sub.subscription_end_date, now)
            if days not in REMINDER_THRESHOLDS:
                continue
            flag = reminder_flag(days)
            if (sub.metadata_ or {}).get(flag):
                continue
            if await self.notifier.renewal_reminder(await self._user_of(db, sub), sub, days):
                sub.set_flags(**{flag: True, f"{flag}_at": now.isoformat()})
                sent += 1

        await db.commit()
        if sent:
            logger.info("Sent %s renewal reminder(s)", sent)
        return sent

    async def send_ending_notifications(self, db: AsyncSession) -> int:
        now = self.now()
        result = await db.execute(
            select(Subscription).where(
                Subscription.status == "success",
                Subscription.auto_renewal_enabled.is_(False),
                Subscription.subscription_end_date >= now,
                Subscription.subscription_end_date <= now + timedelta(days=ENDING_NOTICE_DAYS),
            )
        )
        sent = 0
        for sub in result.scalars().all():
            if days_until(sub.subscription_end_date, now) != ENDING_NOTICE_DAYS:
                continue
            if (sub.metadata_ or {}).get("ending_notification_sent"):
                continue
            if await self.notifier.subscription_ending(await self._user_of(db, sub), sub):
                sub.set_flags(ending_notification_sent=True, ending_notification_sent_at=now.isoformat())
                sent += 1

        await db.commit()
        if sent:
            logger.info("Sent %s subscription-ending notice(s)", sent)
        return sent

    async def process_renewals(self, db: AsyncSession) -> int:
        now = self.now()
        result = await db.execute(
            select(Subscription).where(
                Subscription.status == "success",
                Subscription.auto_renewal_enabled.is_(True),
                Subscription.renewal_attempted.is_(False),
                Subscription.subscription_end_date <= now + RENEWAL_LEAD,
            )
        )
        processed = 0
        for sub in result.scalars().all():
            await self.process_renewal(db, sub)
            processed += 1
        return processed

    async def process_renewal(self, db: AsyncSession, sub: Subscription) -> Subscription | None:
        """
        Create the renewal payment for one subscription.

        The renewal order id is derived from the renewed period's end date, so a
        retry after a crash finds the existing record instead of creating another.
        Returns the renewal record, or None when the gateway call failed.
        """
        now = self.now()
        user = await self._user_of(db, sub)
        order_id = renewal_order_id(sub.user_id, sub.subscription_end_date)

        existing = await self._get_by_order(db, order_id)
        if existing is not None:
            sub.renewal_attempted = True
            sub.last_renewal_attempt = now
            await db.commit()
            logger.info("Renewal %s already exists for %s", order_id, sub.order_id)
            return existing

        expiry_minutes = self.settings.PAYMENT_EXPIRY_MINUTES
        transaction = await self.gateway.create_transaction(
            order_id=order_id,
            amount=sub.amount,
            payment_method=sub.payment_method,
            customer=_customer_for(user),
            callback_url=self.settings.callback_url,
            return_url=self.settings.return_url,
            expiry_minutes=expiry_minutes,
        )

        if transaction.success:
            data = transaction.data
            renewal = Subscription(
                user_id=sub.user_id,
                order_id=order_id,
                status="pending",
                amount=sub.amount,
                payment_method=sub.payment_method,
                reference=data.get("reference"),
                payment_url=data.get("payment_url"),
                va_number=data.get("va_number"),
                qr_string=data.get("qr_string"),
                expires_at=now + timedelta(minutes=expiry_minutes),
                auto_renewal_enabled=True,
                metadata_={
                    "is_renewal": True,
                    "previous_order_id": sub.order_id,
                    "customer_name": user.name,
                    "customer_email": user.email,
                    "customer_username": user.username,
                },
                created_at=now,
                updated_at=now,
            )
            db.add(renewal)
            sub.renewal_attempted = True
            sub.last_renewal_attempt = now
            sub.updated_at = now
            await db.commit()

            logger.info("Renewal payment %s created for %s", order_id, sub.order_id)
            await self.notifier.renewal_payment_created(user, renewal)
            return renewal

        sub.renewal_attempt_count = (sub.renewal_attempt_count or 0) + 1
        sub.last_renewal_attempt = now
        sub.updated_at = now
        attempt = sub.renewal_attempt_count

        if attempt >= MAX_RENEWAL_ATTEMPTS:
            sub.status = "grace_period"
            sub.grace_period_start = sub.subscription_end_date
            sub.grace_period_end = sub.subscription_end_date + timedelta(days=GRACE_PERIOD_DAYS)
            await db.commit()
            logger.warning(
                "Renewal for %s failed %s times, grace period until %s",
                sub.order_id, attempt, sub.grace_period_end,
            )
            await self.notifier.grace_period_started(user, sub)
        else:
            await db.commit()
            logger.warning(
                "Renewal attempt %s for %s failed: %s", attempt, sub.order_id, transaction.message,
            )
            await self.notifier.renewal_failed(user, sub, attempt)
        return None

    async def expire_grace_periods(self, db: AsyncSession) -> int:
        now = self.now()
        result = await db.execute(
            select(Subscription).where(
                Subscription.status == "grace_period",
                Subscription.grace_period_end <= now,
            )
        )
        expired = result.scalars().all()
        for sub in expired:
            sub.status = "expired"
            sub.updated_at = now
        await db.flush()

        for sub in expired:
            user = await self._user_of(db, sub)
            if user.role == PREMIUM_ROLE and not await self.has_access(db, user.id, now):
                user.role = DOWNGRADE_ROLE
                logger.info("User %s downgraded after grace period of %s", user.id, sub.order_id)

        await db.commit()
        return len(expired)

    async def expire_stale_records(self, db: AsyncSession) -> int:
        """Expire unpaid payments past their deadline and ended cancelled/success periods."""
        now = self.now()
        result = await db.execute(
            select(Subscription).where(
                or_(
                    and_(Subscription.status == "pending", Subscription.expires_at <= now),
                    and_(
                        Subscription.status.in_(("cancelled", "success")),
                        Subscription.subscription_end_date <= now,
                    ),
                )
            )
        )
        count = 0
        for sub in result.scalars().all():
            if grants_access(sub, now):
                continue
            sub.status = "expired"
            sub.updated_at = now
            count += 1

        await db.commit()
        if count:
            logger.info("Expired %s stale subscription record(s)", count)
        return count

    async def downgrade_lapsed_users(self, db: AsyncSession) -> int:
        now = self.now()
        result = await db.execute(
            select(User).where(
                User.role == PREMIUM_ROLE,
                ~exists().where(Subscription.user_id == User.id, access_clause(now)),
            )
        )
        users = result.scalars().all()
        for user in users:
            user.role = DOWNGRADE_ROLE
            logger.info("User %s downgraded: no active subscription", user.id)

        await db.commit()
        return len(users)
