"""Tests for the daily scans and the scheduler driver."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from models import Subscription, User
from services.renewal_scheduler import SCANS, SubscriptionScheduler
from services.subscription_lifecycle import reminder_flag, renewal_order_id


@pytest.fixture
def scheduler(lifecycle, session_factory):
    return SubscriptionScheduler(lifecycle, session_factory, interval_seconds=3600)


async def _reload(session_factory, model, pk):
    async with session_factory() as s:
        return await s.get(model, pk)


# ── Reminders ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reminders_are_one_shot_per_threshold(db, lifecycle, notifier, make_user, make_subscription, clock):
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user)
    clock.current = sub.subscription_end_date - timedelta(days=7)

    assert await lifecycle.send_upcoming_renewal_reminders(db) == 1
    assert await lifecycle.send_upcoming_renewal_reminders(db) == 0

    assert notifier.of("reminder") == [("reminder", sub.order_id, 7)]
    assert sub.metadata_[reminder_flag(7)] is True
    assert reminder_flag(7) + "_at" in sub.metadata_


@pytest.mark.asyncio
async def test_reminders_skip_other_days_and_disabled_renewal(db, lifecycle, notifier, make_user, make_subscription, clock):
    user = await make_user(role="verified_premium")
    other = await make_user("u2", role="verified_premium")
    sub = await make_subscription(user)
    await make_subscription(other, auto_renewal_enabled=False)

    clock.current = sub.subscription_end_date - timedelta(days=5)
    assert await lifecycle.send_upcoming_renewal_reminders(db) == 0

    clock.current = sub.subscription_end_date - timedelta(hours=20)
    assert await lifecycle.send_upcoming_renewal_reminders(db) == 1
    assert notifier.of("reminder") == [("reminder", sub.order_id, 1)]


@pytest.mark.asyncio
async def test_ending_notice_sent_once(db, lifecycle, notifier, make_user, make_subscription, clock):
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user, auto_renewal_enabled=False)
    clock.current = sub.subscription_end_date - timedelta(days=3)

    assert await lifecycle.send_ending_notifications(db) == 1
    assert await lifecycle.send_ending_notifications(db) == 0
    assert notifier.of("ending") == [("ending", sub.order_id)]


# ── Renewals ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_renewal_creates_pending_record(db, lifecycle, gateway, notifier, make_user, make_subscription, clock):
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user)
    clock.current = sub.subscription_end_date - timedelta(days=1)

    assert await lifecycle.process_renewals(db) == 1
    assert await lifecycle.process_renewals(db) == 0

    renewal_id = renewal_order_id(user.id, sub.subscription_end_date)
    renewal = await lifecycle._get_by_order(db, renewal_id)
    assert renewal.status == "pending"
    assert renewal.metadata_["is_renewal"] is True
    assert renewal.metadata_["previous_order_id"] == sub.order_id
    assert sub.renewal_attempted is True
    assert sub.last_renewal_attempt == clock.now()
    assert notifier.of("renewal_created") == [("renewal_created", renewal_id)]


@pytest.mark.asyncio
async def test_renewal_retry_does_not_duplicate(db, lifecycle, gateway, make_user, make_subscription, clock):
    """A retry after a lost flag update finds the renewal by its order id."""
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user)
    clock.current = sub.subscription_end_date - timedelta(days=1)
    await lifecycle.process_renewal(db, sub)

    sub.renewal_attempted = False
    await db.commit()
    await lifecycle.process_renewals(db)

    rows = (await db.execute(
        select(Subscription).where(Subscription.order_id.like("SUB-RENEW-%"))
    )).scalars().all()
    assert len(rows) == 1
    assert len(gateway.created) == 1
    assert sub.renewal_attempted is True


@pytest.mark.asyncio
async def test_paid_renewal_supersedes_previous_period(db, lifecycle, gateway, make_user, make_subscription, clock):
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user)
    clock.current = sub.subscription_end_date - timedelta(days=1)
    renewal = await lifecycle.process_renewal(db, sub)

    clock.advance(hours=3)
    payload = {
        "merchantCode": gateway.merchant_code,
        "amount": "45000",
        "merchantOrderId": renewal.order_id,
        "resultCode": "00",
        "signature": gateway.sign_callback("45000", renewal.order_id),
    }
    await lifecycle.handle_callback(db, payload)

    assert renewal.status == "success"
    assert renewal.subscription_end_date == clock.now() + timedelta(days=30)
    assert sub.status == "expired"
    assert sub.metadata_["superseded_by"] == renewal.order_id
    paid = (await db.execute(
        select(Subscription).where(Subscription.user_id == user.id, Subscription.status == "success")
    )).scalars().all()
    assert paid == [renewal]


@pytest.mark.asyncio
async def test_three_failed_renewals_then_grace_then_downgrade(
    lifecycle, scheduler, session_factory, gateway, notifier, make_user, make_subscription, clock,
):
    user = await make_user(role="verified_premium")
    sub = await make_subscription(user)
    end = sub.subscription_end_date
    gateway.fail_create = True

    clock.current = end - timedelta(days=1)
    await scheduler.run_once()
    clock.advance(days=1)
    await scheduler.run_once()

    mid = await _reload(session_factory, Subscription, sub.id)
    assert mid.status == "success"
    assert mid.renewal_attempt_count == 2
    assert (await _reload(session_factory, User, user.id)).role == "verified_premium"

    clock.advance(days=1)
    await scheduler.run_once()

    graced = await _reload(session_factory, Subscription, sub.id)
    assert graced.status == "grace_period"
    assert graced.renewal_attempt_count == 3
    assert graced.grace_period_start == end
    assert graced.grace_period_end == end + timedelta(days=3)
    assert (await _reload(session_factory, User, user.id)).role == "verified_premium"
    assert [n[2] for n in notifier.of("renewal_failed")] == [1, 2]
    assert notifier.of("grace") == [("grace", sub.order_id)]

    clock.current = end + timedelta(days=3)
    await scheduler.run_once()

    expired = await _reload(session_factory, Subscription, sub.id)
    assert expired.status == "expired"
    assert (await _reload(session_factory, User, user.id)).role == "verified"


@pytest.mark.asyncio
async def test_expired_grace_keeps_premium_while_another_record_grants_access(
    db, lifecycle, make_user, make_subscription, clock,
):
    user = await make_user(role="verified_premium")
    end = clock.now() - timedelta(days=3)
    grace = await make_subscription(
        user,
        order_id="SUB-U1-GRACE",
        paid_at=end - timedelta(days=30),
        status="grace_period",
        renewal_attempt_count=3,
        grace_period_start=end,
        grace_period_end=end + timedelta(days=3),
    )
    active = await make_subscription(user, order_id="SUB-U1-ACTIVE", paid_at=clock.now() - timedelta(days=1))

    assert await lifecycle.expire_grace_periods(db) == 1
    assert grace.status == "expired"
    assert active.status == "success"
    assert user.role == "verified_premium"


# ── Sweeps ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_expire_stale_records(db, lifecycle, make_user, make_subscription, clock):
    user = await make_user()
    pending = await make_subscription(user, order_id="SUB-P-1", status="pending")
    cancelled = await make_subscription(user, order_id="SUB-C-1", status="cancelled", auto_renewal_enabled=False)
    active = await make_subscription(
        user, order_id="SUB-A-1", paid_at=clock.now() + timedelta(days=20),
    )
    clock.advance(days=31)

    assert await lifecycle.expire_stale_records(db) == 2
    assert pending.status == "expired"
    assert cancelled.status == "expired"
    assert active.status == "success"


@pytest.mark.asyncio
async def test_downgrade_lapsed_users(db, lifecycle, make_user, make_subscription, clock):
    lapsed = await make_user("lapsed", role="verified_premium")
    active = await make_user("active", role="verified_premium")
    cancelled = await make_user("cancelled", role="verified_premium")
    await make_subscription(active)
    await make_subscription(cancelled, status="cancelled", auto_renewal_enabled=False)

    assert await lifecycle.downgrade_lapsed_users(db) == 1
    assert lapsed.role == "verified"
    assert active.role == "verified_premium"
    assert cancelled.role == "verified_premium"


# ── Scheduler driver ───────────────────────────────────────

@pytest.mark.asyncio
async def test_run_once_runs_every_scan_in_order(scheduler):
    results = await scheduler.run_once()

    assert list(results) == list(SCANS)
    assert all(r["ok"] for r in results.values())
    assert scheduler.stats["total_runs"] == 1
    assert scheduler.stats["successful_runs"] == 1
    assert scheduler.stats["is_running"] is False
    assert scheduler.stats["last_run"] is not None


@pytest.mark.asyncio
async def test_failing_scan_does_not_block_the_rest(scheduler, lifecycle, monkeypatch):
    async def boom(db):
        raise RuntimeError("boom")

    monkeypatch.setattr(lifecycle, "send_ending_notifications", boom)

    results = await scheduler.run_once()

    assert results["send_ending_notifications"]["ok"] is False
    assert results["send_ending_notifications"]["error"] == "boom"
    assert results["downgrade_lapsed_users"]["ok"] is True
    assert scheduler.failed_runs == 1
    assert "boom" in scheduler.last_error


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(scheduler):
    scheduler._running = True
    assert await scheduler.run_once() == {"skipped": True}
    assert scheduler.total_runs == 0


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_cancels(scheduler):
    scheduler.start()
    for _ in range(200):
        if scheduler.successful_runs:
            break
        await asyncio.sleep(0.01)

    assert scheduler.successful_runs == 1
    assert scheduler.stats["loop_active"] is True

    await scheduler.stop()
    assert scheduler.stats["loop_active"] is False
