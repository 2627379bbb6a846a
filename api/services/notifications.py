"""
Notification Service: Subscription emails to users over SMTP.

All outbound lifecycle notifications are routed through a Notifier.
Failures are logged but NEVER raise exceptions (fire-and-forget).
Without SMTP_HOST / EMAIL_FROM the message is logged instead of sent (dev mode).
"""

import asyncio
import logging
import smtplib
import ssl
from datetime import datetime
from email.message import EmailMessage
from typing import Protocol

from config import settings as default_settings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def subscription_activated(self, user, subscription) -> bool: ...

    async def renewal_reminder(self, user, subscription, days: int) -> bool: ...

    async def subscription_ending(self, user, subscription) -> bool: ...

    async def renewal_payment_created(self, user, subscription) -> bool: ...

    async def renewal_failed(self, user, subscription, attempt: int) -> bool: ...

    async def grace_period_started(self, user, subscription) -> bool: ...

    async def cancellation_confirmed(self, user, subscription, refunded: bool) -> bool: ...


def _fmt_date(value: datetime | None) -> str:
    return value.strftime("%d %B %Y") if value else "-"


def _fmt_idr(amount: int | None) -> str:
    return f"Rp {amount or 0:,}".replace(",", ".")


class EmailNotifier:
    def __init__(self, settings=default_settings):
        self.settings = settings

    # ── Transport ──────────────────────────────────────────

    def _from_header(self) -> str:
        s = self.settings
        if s.EMAIL_FROM_NAME and s.EMAIL_FROM:
            return f"{s.EMAIL_FROM_NAME} <{s.EMAIL_FROM}>"
        return s.EMAIL_FROM or ""

    def _deliver(self, to_email: str, subject: str, body: str) -> None:
        s = self.settings
        msg = EmailMessage()
        msg["From"] = self._from_header()
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body)

        with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=s.SMTP_TIMEOUT_SECONDS) as server:
            if s.SMTP_USE_TLS:
                server.starttls(context=ssl.create_default_context())
            if s.SMTP_USERNAME and s.SMTP_PASSWORD:
                server.login(s.SMTP_USERNAME, s.SMTP_PASSWORD)
            server.send_message(msg)

    async def send(self, to_email: str | None, subject: str, body: str) -> bool:
        """
        Send one plain-text email.

        Returns:
            True if the message was handed to SMTP (or logged in dev mode), False otherwise.
        """
        if not to_email:
            logger.warning("Notification skipped: no email address (subject='%s')", subject)
            return False

        if not self.settings.SMTP_HOST or not self.settings.EMAIL_FROM:
            logger.info("[EMAIL DEV MODE] to=%s subject='%s'", to_email, subject)
            logger.debug("[EMAIL DEV MODE] body=%s", body)
            return True

        try:
            await asyncio.to_thread(self._deliver, to_email, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email send failed: to=%s, subject='%s', error=%s", to_email, subject, e)
            return False

        logger.info("Email sent: to=%s, subject='%s'", to_email, subject)
        return True

    def _greeting(self, user) -> str:
        return f"Hi {user.name or user.username},"

    def _signature(self) -> str:
        return f"\n\nThanks,\nThe {self.settings.APP_NAME} Team"

    # ── Templates ──────────────────────────────────────────

    async def subscription_activated(self, user, subscription) -> bool:
        body = (
            f"{self._greeting(user)}\n\n"
            f"Your premium subscription is active.\n\n"
            f"Order: {subscription.order_id}\n"
            f"Amount: {_fmt_idr(subscription.amount)}\n"
            f"Valid until: {_fmt_date(subscription.subscription_end_date)}\n\n"
            f"You can request a full refund within 5 days of payment."
            f"{self._signature()}"
        )
        return await self.send(user.email, f"{self.settings.APP_NAME} Premium activated", body)

    async def renewal_reminder(self, user, subscription, days: int) -> bool:
        unit = "day" if days == 1 else "days"
        body = (
            f"{self._greeting(user)}\n\n"
            f"Your premium subscription renews in {days} {unit}, "
            f"on {_fmt_date(subscription.subscription_end_date)}.\n"
            f"A renewal payment of {_fmt_idr(subscription.amount)} will be created for you.\n\n"
            f"You can turn off auto-renewal from your subscription settings."
            f"{self._signature()}"
        )
        return await self.send(user.email, f"Your subscription renews in {days} {unit}", body)

    async def subscription_ending(self, user, subscription) -> bool:
        body = (
            f"{self._greeting(user)}\n\n"
            f"Your premium subscription ends on {_fmt_date(subscription.subscription_end_date)} "
            f"and auto-renewal is turned off.\n\n"
            f"Turn auto-renewal back on to keep your premium features."
            f"{self._signature()}"
        )
        return await self.send(user.email, "Your premium subscription is ending soon", body)

    async def renewal_payment_created(self, user, subscription) -> bool:
        lines = [
            f"{self._greeting(user)}\n",
            "We created the renewal payment for your premium subscription.\n",
            f"Order: {subscription.order_id}",
            f"Amount: {_fmt_idr(subscription.amount)}",
        ]
        if subscription.va_number:
            lines.append(f"Virtual account: {subscription.va_number}")
        if subscription.payment_url:
            lines.append(f"Pay here: {subscription.payment_url}")
        lines.append(f"Pay before: {_fmt_date(subscription.expires_at)}")
        body = "\n".join(lines) + self._signature()
        return await self.send(user.email, "Complete your subscription renewal", body)

    async def renewal_failed(self, user, subscription, attempt: int) -> bool:
        body = (
            f"{self._greeting(user)}\n\n"
            f"We could not create the renewal payment for your premium subscription "
            f"(attempt {attempt} of 3). We will try again tomorrow."
            f"{self._signature()}"
        )
        return await self.send(user.email, "Subscription renewal failed", body)

    async def grace_period_started(self, user, subscription) -> bool:
        body = (
            f"{self._greeting(user)}\n\n"
            f"Your renewal payment could not be completed. Premium access stays on "
            f"until {_fmt_date(subscription.grace_period_end)}.\n\n"
            f"Start a new payment before then to keep your premium features."
            f"{self._signature()}"
        )
        return await self.send(user.email, "Your subscription is in its grace period", body)

    async def cancellation_confirmed(self, user, subscription, refunded: bool) -> bool:
        if refunded:
            detail = (
                f"A refund of {_fmt_idr(subscription.refund_amount)} has been processed "
                f"(reference {subscription.refund_reference}). Premium access has ended."
            )
        else:
            detail = (
                f"Auto-renewal is off. You keep premium access until "
                f"{_fmt_date(subscription.subscription_end_date)}."
            )
        body = (
            f"{self._greeting(user)}\n\n"
            f"Your premium subscription has been cancelled.\n\n{detail}"
            f"{self._signature()}"
        )
        return await self.send(user.email, "Subscription cancelled", body)
