"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A mocked subscriber endpoint (httpx.AsyncClient)
- Test data factories (subscriptions, deliveries)
"""
import pytest
from datetime import datetime
from typing import AsyncGenerator
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

# Bound before any test patches httpx.AsyncClient for outbound calls
from httpx import ASGITransport, AsyncClient, Response

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from notifier.core.config import settings
from notifier.core.signing import generate_secret
from notifier.db.database import Base, get_db
from notifier.db.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from notifier.db.models.webhook_subscription import WebhookSubscription
from notifier.db.sqlalchemy_store import SQLAlchemyDeliveryStore
from notifier.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_API_KEY = "test-admin-api-key-for-tests"
ADMIN_HEADERS = {"X-Admin-API-Key": TEST_API_KEY}

ORG_ID = "org-test"
OTHER_ORG_ID = "org-other"
DEFAULT_EVENT = "compliance.score_changed"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(db_session: AsyncSession) -> SQLAlchemyDeliveryStore:
    return SQLAlchemyDeliveryStore(db_session)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_api_key():
    """Configure ADMIN_API_KEY for operator routes"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_API_KEY):
        yield TEST_API_KEY


# ============================================================================
# Mock Subscriber Endpoint
# ============================================================================


def make_response(status_code: int = 200, text: str = "ok") -> Response:
    return Response(status_code, text=text)


@pytest.fixture
def webhook_response():
    """Builder for subscriber responses: ``webhook_response(503, "busy")``"""
    return make_response


@pytest.fixture
def mock_webhook_endpoint():
    """
    Replace httpx.AsyncClient for outbound deliveries.

    ``client.stream("POST", url, ...)`` is answered by ``mock.post(url, ...)``.
    Set ``mock.post.return_value = make_response(500)`` or a ``side_effect``
    to simulate failures; the default answer is 200 "ok".
    """
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=make_response())

        @asynccontextmanager
        async def _stream(method, url, **kwargs):
            yield await mock_instance.post(url, **kwargs)

        mock_instance.stream = _stream
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance
        mock_instance.client_class = mock_client

        yield mock_instance


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating test subscriptions"""
    async def _create_subscription(
        organization_id: str = ORG_ID,
        name: str = "Test Endpoint",
        url: str = "https://hooks.example.com/webhook",
        events: list[str] | None = None,
        headers: dict[str, str] | None = None,
        is_active: bool = True,
        secret: str | None = None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            organization_id=organization_id,
            name=name,
            url=url,
            secret=secret or generate_secret(),
            events=events if events is not None else [DEFAULT_EVENT],
            headers=headers,
            is_active=is_active,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create_subscription


@pytest.fixture
def delivery_factory(db_session: AsyncSession):
    """Factory for creating test deliveries"""
    async def _create_delivery(
        subscription_id: str,
        event: str = DEFAULT_EVENT,
        payload: dict | None = None,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        attempts: int = 0,
        max_attempts: int = 3,
        next_retry_at: datetime | None = None,
        response_time_ms: int | None = None,
        error_message: str | None = None,
        created_at: datetime | None = None,
    ) -> WebhookDelivery:
        delivery = WebhookDelivery(
            subscription_id=subscription_id,
            event=event,
            payload=payload or {
                "id": "11111111-2222-3333-4444-555555555555",
                "event": event,
                "timestamp": "2026-01-01T00:00:00.000Z",
                "data": {"score": 87},
            },
            status=status,
            attempts=attempts,
            max_attempts=max_attempts,
            next_retry_at=next_retry_at,
            response_time_ms=response_time_ms,
            error_message=error_message,
        )
        if created_at is not None:
            delivery.created_at = created_at
        db_session.add(delivery)
        await db_session.commit()
        await db_session.refresh(delivery)
        return delivery

    return _create_delivery
