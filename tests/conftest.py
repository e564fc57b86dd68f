"""
Pytest configuration and fixtures.
"""
import os

# Settings are read from the environment at import time
os.environ.setdefault("CARDCOM_TERMINAL_NUMBER", "1000")
os.environ.setdefault("CARDCOM_API_NAME", "test_api")
os.environ.setdefault("CARDCOM_API_PASSWORD", "test_password")
os.environ.setdefault("CARDCOM_BASE_URL", "https://cardcom.test")
os.environ.setdefault("CARDCOM_RETRY_MAX_ATTEMPTS", "3")
os.environ.setdefault("CARDCOM_RETRY_BASE_DELAY", "0")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("EMAIL_ENABLED", "true")

import uuid
from datetime import timedelta
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings, get_settings
from core.locks import DistributedLock
from core.notifications import EmailNotifier
from core.payment_sessions import PaymentSessionService
from core.subscriptions import SubscriptionService
from database.models import (
    Base,
    PaymentSession,
    PaymentToken,
    Subscription,
    UserProfile,
    utcnow,
)
from integrations.cardcom_client import CardcomClient
from integrations.webhook_handler import CardcomWebhookHandler
from tests.helpers import CardcomStub


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Settings loaded from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cardcom_stub() -> CardcomStub:
    return CardcomStub()


@pytest_asyncio.fixture
async def cardcom_client(
    test_settings: Settings, cardcom_stub: CardcomStub
) -> AsyncGenerator[CardcomClient, Any]:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(cardcom_stub.handler),
        base_url=test_settings.cardcom_base_url,
    )
    client = CardcomClient(settings=test_settings, http_client=http_client)
    yield client
    await client.close()


@pytest.fixture
def redis_mock() -> AsyncMock:
    """Redis client double: nothing cached, every write accepted."""
    redis = AsyncMock()
    redis.get.return_value = None
    return redis


@pytest.fixture
def lock() -> DistributedLock:
    """Lock whose Redlock always grants the resource."""
    return DistributedLock(redlock=MagicMock())


@pytest.fixture
def notifier(test_settings: Settings) -> EmailNotifier:
    """Notifier with SMTP delivery replaced; sent messages are on ``_deliver``."""
    email_notifier = EmailNotifier(test_settings)
    email_notifier._deliver = MagicMock()
    return email_notifier


@pytest.fixture
def subscription_service(test_settings: Settings, notifier: EmailNotifier) -> SubscriptionService:
    return SubscriptionService(notifier, test_settings)


@pytest.fixture
def webhook_handler(
    test_settings: Settings,
    subscription_service: SubscriptionService,
    redis_mock: AsyncMock,
    lock: DistributedLock,
) -> CardcomWebhookHandler:
    return CardcomWebhookHandler(
        subscription_service, redis_client=redis_mock, lock=lock, settings=test_settings
    )


@pytest.fixture
def session_service(
    test_settings: Settings,
    cardcom_client: CardcomClient,
    webhook_handler: CardcomWebhookHandler,
) -> PaymentSessionService:
    return PaymentSessionService(cardcom_client, webhook_handler, test_settings)


@pytest.fixture
def make_user(test_db: AsyncSession) -> Callable[..., Any]:
    """Create and commit a user profile."""

    async def _make_user(email: Optional[str] = None, **fields: Any) -> UserProfile:
        profile = UserProfile(
            id=uuid.uuid4(),
            email=email or f"trader-{uuid.uuid4().hex[:8]}@example.com",
            first_name=fields.pop("first_name", "ישראל"),
            last_name=fields.pop("last_name", "ישראלי"),
            phone=fields.pop("phone", "0501234567"),
            **fields,
        )
        test_db.add(profile)
        await test_db.commit()
        return profile

    return _make_user


@pytest.fixture
def make_subscription(test_db: AsyncSession) -> Callable[..., Any]:
    """Create and commit a subscription; defaults to an active monthly plan."""

    async def _make_subscription(user_id: uuid.UUID, **fields: Any) -> Subscription:
        now = utcnow()
        values: Dict[str, Any] = {
            "plan_type": "monthly",
            "status": "active",
            "current_period_starts_at": now - timedelta(days=10),
            "current_period_ends_at": now + timedelta(days=20),
            "next_charge_at": now + timedelta(days=20),
            "payment_method": {"lastFourDigits": "4580", "expiryMonth": "07", "expiryYear": "29"},
            "fail_count": 0,
        }
        values.update(fields)
        subscription = Subscription(id=uuid.uuid4(), user_id=user_id, **values)
        test_db.add(subscription)
        await test_db.commit()
        return subscription

    return _make_subscription


@pytest.fixture
def make_token(test_db: AsyncSession) -> Callable[..., Any]:
    async def _make_token(user_id: uuid.UUID, **fields: Any) -> PaymentToken:
        token = PaymentToken(
            id=uuid.uuid4(),
            user_id=user_id,
            token=fields.pop("token", f"tok-{uuid.uuid4().hex[:8]}"),
            card_last_four=fields.pop("card_last_four", "4580"),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        test_db.add(token)
        await test_db.commit()
        return token

    return _make_token


@pytest.fixture
def make_session(test_db: AsyncSession) -> Callable[..., Any]:
    """Create and commit an initiated payment session."""

    async def _make_session(
        user_id: Optional[uuid.UUID] = None, **fields: Any
    ) -> PaymentSession:
        now = utcnow()
        values: Dict[str, Any] = {
            "low_profile_code": f"lp-{uuid.uuid4().hex[:10]}",
            "reference": str(user_id) if user_id else f"anon_{uuid.uuid4().hex}",
            "plan_id": "monthly",
            "amount_cents": 0,
            "currency": "ILS",
            "status": "initiated",
            "operation_type": "token_only",
            "expires_at": now + timedelta(minutes=30),
        }
        values.update(fields)
        session = PaymentSession(id=uuid.uuid4(), user_id=user_id, **values)
        test_db.add(session)
        await test_db.commit()
        return session

    return _make_session
