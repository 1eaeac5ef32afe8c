"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from ledger_backend.app.main import app
from ledger_backend.app.db.session import get_db, Base
from ledger_backend.app.core.jwt import create_access_token
from ledger_backend.app.schemas.ledger import OrderEvent
from ledger_backend.app.domain.ledger.settlement_engine import SettlementPeriod
from ledger_backend.app.services.payout_rail import PayoutRail, PayoutRequestError, get_payout_rail

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# A Tuesday inside the settlement period [2025-03-03, 2025-03-10)
EVENT_TIME = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2025, 3, 3, tzinfo=timezone.utc)
PERIOD_END = datetime(2025, 3, 10, tzinfo=timezone.utc)


class FakePayoutRail(PayoutRail):
    """Records requests; fails them while `fail` is set."""

    def __init__(self):
        self.requests = []
        self.fail = False

    async def request_payout(self, request):
        self.requests.append(request)
        if self.fail:
            raise PayoutRequestError("rail unreachable")
        return f"rail-{request.settlement_id}-{request.attempt}"


@pytest.fixture
def payout_rail():
    return FakePayoutRail()


@pytest.fixture(autouse=True)
def apply_overrides(payout_rail):
    """Route the app to the test database and the fake payout rail."""

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payout_rail] = lambda: payout_rail
    yield
    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    """Open extra sessions, e.g. a concurrent writer or a later webhook delivery."""
    return TestingSessionLocal


def make_event(**overrides) -> OrderEvent:
    """Order O1: subtotal 200.00, 15% commission, delivery fee 30.00, card."""
    data = {
        "order_id": "O1",
        "event_type": "delivered",
        "subtotal": 20000,
        "delivery_fee": 3000,
        "commission_rate": Decimal("0.15"),
        "payment_method": "card",
        "payment_captured": True,
        "restaurant_id": "resto-1",
        "delivery_agent_id": "agent-1",
        "client_id": "client-1",
        "timestamp": EVENT_TIME,
    }
    data.update(overrides)
    return OrderEvent(**data)


def auth_headers(role: str, sub: str = None, owner_ref: str = None) -> dict:
    sub = sub or f"{role.lower()}-user"
    token = create_access_token(data={"sub": sub, "role": role, "owner_ref": owner_ref or sub})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def service_headers():
    return auth_headers("SERVICE", sub="order-service")


@pytest.fixture
def admin_headers():
    return auth_headers("ADMIN", sub="admin-1")


@pytest.fixture
def make_order_event():
    return make_event


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def event_time():
    return EVENT_TIME


@pytest.fixture
def period():
    return SettlementPeriod(start=PERIOD_START, end=PERIOD_END)
