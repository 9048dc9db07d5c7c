"""
Centralized Test Configuration.
"""

import pytest
from types import SimpleNamespace
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.permissions import load_actor
from backend.app.domain.approvals.workflow import ApprovalWorkflow
from backend.app.services.file_storage import FileStorage
from backend.app.services.notification_service import ConnectionRegistry, NotificationService
from backend.seed import seed_reference_data

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine.sync_engine, "connect", set_sqlite_pragma)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# Shared session for fixture data creation and domain-level tests
@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.published = []
        self._closed = False

    async def ping(self):
        return not self._closed

    async def publish(self, channel, message):
        if self._closed:
            raise ConnectionError("Redis connection closed")
        self.published.append((channel, message))
        return 1

    async def aclose(self):
        self._closed = True


@pytest.fixture
def redis_mock():
    return MockRedis()


@pytest.fixture
def storage(tmp_path):
    return FileStorage(str(tmp_path / "uploads"), "/api/uploads")


@pytest.fixture
def connections():
    return ConnectionRegistry()


@pytest.fixture
def notifier(connections, redis_mock):
    return NotificationService(connections, redis=redis_mock)


@pytest.fixture
def workflow(notifier, storage):
    return ApprovalWorkflow(notifier, storage)


@pytest.fixture
async def seed(db_session):
    """
    Roles, users, currencies and accounts from the seed script.

    Users: admin, approver, staff, viewer.
    Accounts: "USD Cash", "USD Bank", "EUR Bank", "AED Cash", "USDT Wallet".
    """
    data = await seed_reference_data(db_session)
    await db_session.commit()
    return SimpleNamespace(users=data["users"], accounts=data["accounts"])


@pytest.fixture
async def actors(db_session, seed):
    """Resolved Actor per seeded user."""
    return SimpleNamespace(**{
        name: await load_actor(db_session, user.id)
        for name, user in seed.users.items()
    })


@pytest.fixture
def headers(seed):
    """Actor header per seeded user, e.g. headers["staff"]."""
    return {name: {"X-User-Id": str(user.id)} for name, user in seed.users.items()}


@pytest.fixture
async def client(session_factory, notifier, storage, connections):
    """Async client for testing, wired to the per-test database and collaborators."""
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    original_state = (app.state.notifier, app.state.file_storage, app.state.connections)
    app.dependency_overrides[get_db] = override_get_db
    app.state.notifier = notifier
    app.state.file_storage = storage
    app.state.connections = connections

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await notifier.drain()
    app.dependency_overrides.clear()
    app.state.notifier, app.state.file_storage, app.state.connections = original_state


@pytest.fixture
def order_data(seed):
    """Order payload builder: 100 USD in, 90 EUR out at 0.9 unless overridden."""
    def build(**overrides):
        data = {
            "customer_id": 1,
            "from_currency": "USD",
            "to_currency": "EUR",
            "amount_buy": 100.0,
            "amount_sell": 90.0,
            "rate": 0.9,
            "buy_account_id": seed.accounts["USD Cash"].id,
            "sell_account_id": seed.accounts["EUR Bank"].id,
        }
        data.update(overrides)
        return data
    return build
