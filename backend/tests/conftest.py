"""
Pytest fixtures for test database, client, services and authentication.

Each test gets a fresh in-memory SQLite database (tables created and dropped
around it). Push delivery goes through FakePushSender, so no test talks to a
real push service.
"""

import asyncio
import json
import os

# Settings are read once at import time; configure the test environment first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_ENABLED"] = "False"
os.environ["ENVIRONMENT"] = "test"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from bookingcore.core.config import get_settings  # noqa: E402
from bookingcore.core.errors import DeliveryError  # noqa: E402
from bookingcore.core.security import create_access_token  # noqa: E402
from bookingcore.db.base import Base  # noqa: E402
from bookingcore.db.session import get_db  # noqa: E402
from bookingcore.main import app  # noqa: E402
from bookingcore.models import Booking  # noqa: E402
from bookingcore.services.booking_service import create_booking, transition_booking  # noqa: E402
from bookingcore.services.channel_factory import build_services  # noqa: E402

RESTAURANT_ID = "11111111-1111-1111-1111-111111111111"
USER_ID = "22222222-2222-2222-2222-222222222222"


class FakePushSender:
    """
    Records every payload. Per-endpoint behaviour:
      failures[endpoint] = DeliveryError(...)  -> raised
      failures[endpoint] = "slow"              -> sleeps past any test timeout
    """

    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.failures: dict[str, object] = {}

    async def send(self, subscription_info: dict, data: str) -> None:
        endpoint = subscription_info["endpoint"]
        outcome = self.failures.get(endpoint)
        if outcome == "slow":
            await asyncio.sleep(5)
        if isinstance(outcome, DeliveryError):
            raise outcome
        self.sent.append((endpoint, json.loads(data)))


async def count_rows(db: AsyncSession, model, *criteria) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield session, then drop tables for isolation."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture
def services(settings, push_sender):
    return build_services(settings, sender=push_sender)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB dependency with the test session."""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.services = None


@pytest.fixture
def auth_headers() -> dict:
    """Bearer token for a staff member."""
    token = create_access_token(data={"sub": "staff-1", "role": "staff"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> dict:
    token = create_access_token(data={"sub": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def webhook_headers() -> dict:
    return {"X-Webhook-Signature": "test-webhook-secret"}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def booking_time() -> datetime:
    # Friday evening
    return datetime(2026, 10, 23, 19, 30, tzinfo=timezone.utc)


@pytest.fixture
def make_booking(db_session: AsyncSession, booking_time: datetime):
    """
    Factory: create a committed booking and walk it to `status` through the
    state machine.
    """

    paths = {
        "pending": [],
        "confirmed": ["confirmed"],
        "seated": ["confirmed", "seated"],
        "ordered": ["confirmed", "seated", "ordered"],
        "completed": ["confirmed", "seated", "completed"],
    }

    async def _make(
        status: str = "pending",
        user_id: str = USER_ID,
        restaurant_id: str = RESTAURANT_ID,
        party_size: int = 4,
        **kwargs,
    ) -> Booking:
        booking = await create_booking(
            db_session,
            restaurant_id=restaurant_id,
            party_size=party_size,
            booking_time=kwargs.pop("booking_time", booking_time),
            user_id=user_id,
            guest_name=kwargs.pop("guest_name", None if user_id else "Walk-in Guest"),
            **kwargs,
        )
        await db_session.commit()
        for step in paths[status]:
            await transition_booking(db_session, booking.id, step, actor_id="staff-1")
            await db_session.commit()
        await db_session.refresh(booking)
        return booking

    return _make


@pytest.fixture
def later_tonight() -> datetime:
    """23:00 UTC tomorrow: after every entry created in the test, with a known time of day."""
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    return tomorrow.replace(hour=23, minute=0, second=0, microsecond=0)
