"""
Pytest configuration and fixtures for testing
"""
import os

# Test identity and webhook secrets must be in place before settings load
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-entitlements")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from services.billing_service import StripeBillingClient, get_billing_client

# Create in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

# Create test engine (one shared connection so every session sees the same database)
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    future=True,
    poolclass=StaticPool,
)

# Create test session factory
TestAsyncSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def epoch(value: datetime) -> int:
    """Naive UTC datetime -> unix timestamp, as Stripe reports times."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class FakeBillingClient(StripeBillingClient):
    """
    Billing client double: records every provider call and serves
    subscriptions from an in-memory table. Webhook verification is real.
    """

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, timeout_seconds=1)
        self.calls = []
        self.subscriptions = {}
        self.fail_with: Optional[Exception] = None
        self._sessions = 0

    def _record(self, call_name: str, **kwargs) -> None:
        self.calls.append((call_name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def call_names(self):
        return [name for name, _ in self.calls]

    def last_call(self, call_name: str) -> dict:
        return [kwargs for call, kwargs in self.calls if call == call_name][-1]

    async def create_or_get_customer(self, email, name, user_id):
        self._record("create_or_get_customer", email=email, name=name, user_id=user_id)
        return f"cus_{user_id}"

    async def create_checkout_session(
        self, customer_id, price_id, success_url, cancel_url, trial_period_days=None, user_id=None
    ):
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            trial_period_days=trial_period_days,
            user_id=user_id,
        )
        self._sessions += 1
        session_id = f"cs_test_{self._sessions}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/pay/{session_id}"}

    async def create_portal_session(self, customer_id, return_url):
        self._record("create_portal_session", customer_id=customer_id, return_url=return_url)
        return f"https://billing.stripe.test/p/session/{customer_id}"

    async def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return dict(self.subscriptions[subscription_id])

    async def cancel_subscription(self, subscription_id, immediately=False):
        self._record("cancel_subscription", subscription_id=subscription_id, immediately=immediately)
        subscription = dict(self.subscriptions[subscription_id])
        if immediately:
            subscription["status"] = "canceled"
            subscription["canceled_at"] = int(time.time())
        else:
            subscription["cancel_at_period_end"] = True
        self.subscriptions[subscription_id] = subscription
        return dict(subscription)

    async def reactivate_subscription(self, subscription_id):
        self._record("reactivate_subscription", subscription_id=subscription_id)
        subscription = dict(self.subscriptions[subscription_id])
        subscription["cancel_at_period_end"] = False
        self.subscriptions[subscription_id] = subscription
        return dict(subscription)

    async def pause_subscription(self, subscription_id, resumes_at):
        self._record("pause_subscription", subscription_id=subscription_id, resumes_at=resumes_at)
        subscription = dict(self.subscriptions[subscription_id])
        subscription["pause_collection"] = {"behavior": "void", "resumes_at": epoch(resumes_at)}
        self.subscriptions[subscription_id] = subscription
        return dict(subscription)

    async def resume_subscription(self, subscription_id):
        self._record("resume_subscription", subscription_id=subscription_id)
        subscription = dict(self.subscriptions[subscription_id])
        subscription["pause_collection"] = None
        self.subscriptions[subscription_id] = subscription
        return dict(subscription)


def build_stripe_subscription(
    subscription_id: str = "sub_test_1",
    customer: str = "cus_user-1",
    status: str = "active",
    price_id: str = "price_plus_monthly",
    trial_start: Optional[datetime] = None,
    trial_end: Optional[datetime] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    user_id: Optional[str] = None,
) -> dict:
    """Stripe-shaped subscription object (the parts the event applier reads)."""
    start = period_start or datetime(2026, 1, 1)
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "start_date": epoch(start),
        "current_period_start": epoch(start),
        "current_period_end": epoch(period_end) if period_end else epoch(start) + 30 * 86400,
        "trial_start": epoch(trial_start) if trial_start else None,
        "trial_end": epoch(trial_end) if trial_end else None,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": None,
        "ended_at": None,
        "pause_collection": None,
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": price_id}}]},
    }


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
async def test_db():
    """
    Fixture that provides an isolated, in-memory SQLite database connection for each test.

    This fixture:
    - Creates all tables before the test runs
    - Yields a clean AsyncSession for the test
    - Drops all tables after the test completes
    """
    # Create all tables
    async with test_engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)

    # Create a session for the test
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # Drop all tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Each test runs on its own event loop; start the next one on a fresh connection
    await test_engine.dispose()


@pytest.fixture
def billing_client():
    return FakeBillingClient()


@pytest.fixture
def stripe_subscription():
    """Factory fixture for Stripe subscription payloads."""
    return build_stripe_subscription


@pytest.fixture
def webhook_signature():
    """Factory fixture that signs webhook payloads with the test secret."""
    return sign_webhook


@pytest.fixture
def make_user(test_db):
    """Factory fixture that stores a user and commits it."""
    from crud.user import UserRepository

    async def _make_user(user_id: str = "user-1", email: Optional[str] = None, name: str = "Test User"):
        user = await UserRepository(test_db).create_user({
            "id": user_id,
            "email": email or f"{user_id}@example.com",
            "name": name,
        })
        await test_db.commit()
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    """Factory fixture returning a Bearer header for a user id."""
    from auth_utils import create_jwt

    def _auth_headers(user_id: str = "user-1", email: Optional[str] = None) -> dict:
        return {"Authorization": f"Bearer {create_jwt(user_id, email=email)}"}

    return _auth_headers


# Override get_db dependency to use test database
async def override_get_db():
    """Override get_db to use test database"""
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def async_client(test_db, billing_client):
    """
    Async HTTP client fixture with test database and billing client overrides.
    Uses httpx.AsyncClient for asynchronous testing.
    """
    from main import app

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_client] = lambda: billing_client

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    # Cleanup: remove dependency overrides
    app.dependency_overrides.clear()
