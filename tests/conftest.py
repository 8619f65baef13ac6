"""
Test Configuration
==================

Shared fixtures: an in-memory SQLite database, a fake signature verifier,
an in-memory Redis stand-in, and an HTTP client bound to the app.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["API_KEY"] = "test-api-key"
os.environ.setdefault("APPLE_BUNDLE_ID", "com.comms.comms")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.errors import SignatureInvalidError
from app.db.base import Base
from app.db.session import get_db
from app.dependencies import get_app_store_api, get_signature_verifier
from app.main import app
from app.models import Profile
from app.schemas.app_store import (
    NotificationType,
    RenewalInfo,
    Transaction,
    WebhookNotification,
)
from app.services import cache as cache_module
from app.services.entitlement_store import EntitlementStore

API_KEY = "test-api-key"
USER_ID = "8d5b1c1e-2f3a-4b5c-9d6e-7f8a9b0c1d2e"
OTHER_USER_ID = "11111111-2222-3333-4444-555555555555"
PRODUCT_ID = "com.comms.comms.premium_monthly"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeVerifier:
    """
    Stands in for SignatureVerifier.

    Tokens registered with ``add_*`` decode to the given payload; any other
    token fails verification.
    """

    def __init__(self):
        self.transactions: dict[str, Transaction] = {}
        self.notifications: dict[str, WebhookNotification] = {}
        self.renewals: dict[str, RenewalInfo] = {}

    def add_transaction(self, token: str, transaction: Transaction) -> str:
        self.transactions[token] = transaction
        return token

    def add_notification(self, token: str, notification: WebhookNotification) -> str:
        self.notifications[token] = notification
        return token

    def add_renewal(self, token: str, renewal: RenewalInfo) -> str:
        self.renewals[token] = renewal
        return token

    async def decode_transaction(self, token: str) -> Transaction:
        if token not in self.transactions:
            raise SignatureInvalidError("bad signature")
        return self.transactions[token]

    async def decode_notification(self, signed_payload: str) -> WebhookNotification:
        if signed_payload not in self.notifications:
            raise SignatureInvalidError("bad signature")
        return self.notifications[signed_payload]

    async def decode_renewal_info(self, token: str) -> RenewalInfo:
        if token not in self.renewals:
            raise SignatureInvalidError("bad signature")
        return self.renewals[token]


class FakeRedis:
    """Minimal in-memory subset of redis.asyncio.Redis used by CacheManager."""

    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.data)

    async def aclose(self):
        return None


def make_transaction(
    *,
    original_transaction_id: str = "2000000000000001",
    transaction_id: Optional[str] = None,
    product_id: str = PRODUCT_ID,
    app_account_token: Optional[str] = USER_ID,
    purchase_date: datetime = datetime(2023, 12, 1, tzinfo=timezone.utc),
    expires_date: Optional[datetime] = datetime(2024, 2, 1, tzinfo=timezone.utc),
    environment: Optional[str] = "Sandbox",
) -> Transaction:
    return Transaction(
        original_transaction_id=original_transaction_id,
        transaction_id=transaction_id or original_transaction_id,
        product_id=product_id,
        purchase_date=purchase_date,
        expires_date=expires_date,
        app_account_token=app_account_token,
        price=9990,
        currency="USD",
        environment=environment,
        bundle_id="com.comms.comms",
    )


def make_notification(
    notification_type: NotificationType,
    *,
    signed_transaction_info: Optional[str] = "tx-token",
    signed_renewal_info: Optional[str] = None,
    notification_uuid: str = "6a9f3c1e-0000-4000-8000-000000000001",
    signed_date: Optional[datetime] = NOW,
) -> WebhookNotification:
    return WebhookNotification(
        notification_type=notification_type,
        raw_notification_type=notification_type.value,
        notification_uuid=notification_uuid,
        signed_transaction_info=signed_transaction_info,
        signed_renewal_info=signed_renewal_info,
        environment="Sandbox",
        bundle_id="com.comms.comms",
        version="2.0",
        signed_date=signed_date,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite schema per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db) -> EntitlementStore:
    return EntitlementStore(db)


@pytest_asyncio.fixture
async def profile(db) -> Profile:
    """A profile row for USER_ID with no entitlements."""
    row = Profile(user_id=USER_ID)
    db.add(row)
    await db.commit()
    return row


# ---------------------------------------------------------------------------
# Fakes as fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    """Route CacheManager to an in-memory store for every test."""
    fake = FakeRedis()
    monkeypatch.setattr(cache_module, "_redis_client", fake)
    return fake


@pytest.fixture
def app_store_api() -> AsyncMock:
    api = AsyncMock()
    api.get_latest_signed_transaction.return_value = None
    return api


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory,
    verifier,
    app_store_api,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the database, verifier and App Store API replaced."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_signature_verifier] = lambda: verifier
    app.dependency_overrides[get_app_store_api] = lambda: app_store_api

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": API_KEY}
