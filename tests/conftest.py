"""Shared fixtures: in-memory database, fixed clock, fake gateway, recording notifier."""

import os
import sys
from datetime import datetime, timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET"] = "test-secret-key-for-subscription-tests"
os.environ["DUITKU_MERCHANT_CODE"] = "D0001"
os.environ["DUITKU_API_KEY"] = "test-api-key"
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from db.database import Base
from models import Subscription, User
from services.duitku import DuitkuClient, GatewayResult
from services.subscription_lifecycle import SubscriptionLifecycle

MERCHANT_CODE = "D0001"
API_KEY = "test-api-key"
START = datetime(2025, 1, 1, 9, 0, 0)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeGateway(DuitkuClient):
    """Real signing and callback verification; canned responses instead of HTTP."""

    def __init__(self):
        super().__init__(
            merchant_code=MERCHANT_CODE,
            api_key=API_KEY,
            base_url="https://sandbox.duitku.test/webapi/api/merchant",
            sandbox=True,
        )
        self.fail_create = False
        self.fail_refund = False
        self.status_code = "01"
        self.created: list[dict] = []
        self.refunds: list[dict] = []

    async def create_transaction(self, order_id, amount, payment_method, customer, **kwargs):
        if self.fail_create:
            return GatewayResult(success=False, message="Payment channel unavailable")
        self.created.append({"order_id": order_id, "amount": amount, "payment_method": payment_method})
        return GatewayResult(
            success=True,
            data={
                "reference": f"DS{len(self.created):04d}",
                "payment_url": f"https://sandbox.duitku.test/pay/{order_id}",
                "va_number": "7007014001234567",
                "qr_string": None,
                "amount": str(amount),
                "status_message": "SUCCESS",
            },
        )

    async def check_transaction_status(self, order_id):
        return GatewayResult(success=True, data={"status_code": self.status_code, "reference": "DS-STATUS"})

    async def request_refund(self, reference, amount, reason):
        if self.fail_refund:
            return GatewayResult(success=False, message="Refund rejected")
        self.refunds.append({"reference": reference, "amount": amount, "reason": reason})
        return GatewayResult(success=True, data={"refund_reference": f"REFUND-{reference}", "status": "processed"})

    async def get_payment_methods(self, amount):
        return GatewayResult(
            success=True,
            data=[
                {"paymentMethod": "BC", "paymentName": "BCA VA", "paymentImage": "bc.png", "totalFee": "4000"},
                {"paymentMethod": "OV", "paymentName": "OVO", "paymentImage": "ov.png", "totalFee": "0"},
                {"paymentMethod": "SP", "paymentName": "ShopeePay QRIS", "paymentImage": "sp.png", "totalFee": "1575.00"},
                {"paymentMethod": "ZZ", "paymentName": "Other", "paymentImage": "zz.png", "totalFee": None},
            ],
        )


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    def of(self, kind: str) -> list[tuple]:
        return [n for n in self.sent if n[0] == kind]

    async def subscription_activated(self, user, subscription) -> bool:
        self.sent.append(("activated", subscription.order_id))
        return True

    async def renewal_reminder(self, user, subscription, days) -> bool:
        self.sent.append(("reminder", subscription.order_id, days))
        return True

    async def subscription_ending(self, user, subscription) -> bool:
        self.sent.append(("ending", subscription.order_id))
        return True

    async def renewal_payment_created(self, user, subscription) -> bool:
        self.sent.append(("renewal_created", subscription.order_id))
        return True

    async def renewal_failed(self, user, subscription, attempt) -> bool:
        self.sent.append(("renewal_failed", subscription.order_id, attempt))
        return True

    async def grace_period_started(self, user, subscription) -> bool:
        self.sent.append(("grace", subscription.order_id))
        return True

    async def cancellation_confirmed(self, user, subscription, refunded) -> bool:
        self.sent.append(("cancelled", subscription.order_id, refunded))
        return True


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(gateway, notifier, clock):
    return SubscriptionLifecycle(gateway=gateway, notifier=notifier, clock=clock, settings=settings)


@pytest.fixture
def make_user(db):
    async def _make(username="u1", role="verified", **fields):
        user = User(
            username=username,
            name=fields.pop("name", "Test User"),
            email=fields.pop("email", f"{username}@example.com"),
            role=role,
            **fields,
        )
        db.add(user)
        await db.commit()
        return user
    return _make


@pytest.fixture
def make_subscription(db, clock):
    """Paid (status=success) subscription unless overridden."""
    async def _make(user, order_id=None, paid_at=None, **fields):
        paid_at = paid_at or clock.now()
        status = fields.pop("status", "success")
        values = dict(
            user=user,
            user_id=user.id,
            order_id=order_id or f"SUB-{user.username}-{int(paid_at.timestamp())}",
            status=status,
            amount=settings.SUBSCRIPTION_PRICE,
            payment_method="BC",
            reference="DS-REF-1",
            expires_at=paid_at + timedelta(days=1),
            metadata_={},
            created_at=paid_at,
            updated_at=paid_at,
        )
        if status != "pending":
            values.update(
                paid_at=paid_at,
                subscription_start_date=paid_at,
                subscription_end_date=paid_at + timedelta(days=30),
            )
        values.update(fields)
        sub = Subscription(**values)
        db.add(sub)
        await db.commit()
        return sub
    return _make
