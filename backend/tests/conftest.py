"""
Test fixtures for the inventory reservation backend.

Provides:
- A fresh SQLite database per test (file-backed, so concurrent sessions
  get their own connections like they would against PostgreSQL)
- Async test client with dependency overrides
- Lock registry and event bus instances bound to the test's event loop
- Test data factories for stock lines, serial units and reservations
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

# DB settings required by Settings validation (tests use SQLite, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from datetime import datetime, timedelta
from typing import AsyncGenerator, List

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from backend.app.core.base import Base
from backend.app.core.locks import VariantLockRegistry
from backend.app.main import app
from backend.app.api.deps import get_session, get_session_factory, get_locks, get_events
from backend.app.models.stock import StockLine, SerialNumber
from backend.app.services.events import InventoryEventBus, InventoryUpdateEvent
from backend.app.services.reservations import ReservationService
from backend.app.services.stock import StockLedger

TEST_TTL_SECONDS = 600
TEST_MAX_TTL_SECONDS = 3600
TEST_LOCK_TIMEOUT = 2.0
COUNTED_ID = 101
SERIAL_ID = 202


class FrozenClock:
    """Controllable replacement for utcnow()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class EventRecorder:
    """Subscriber that keeps every published event."""

    def __init__(self):
        self.events: List[InventoryUpdateEvent] = []

    async def __call__(self, event: InventoryUpdateEvent) -> None:
        self.events.append(event)

    def of_type(self, change_type: str) -> List[InventoryUpdateEvent]:
        return [e for e in self.events if e.change_type == change_type]


@pytest.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create all tables in a throwaway database for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks() -> VariantLockRegistry:
    # asyncio locks belong to one event loop; never share the process-wide registry
    return VariantLockRegistry(timeout=TEST_LOCK_TIMEOUT)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def event_bus(recorder: EventRecorder) -> InventoryEventBus:
    bus = InventoryEventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 2, 12, 0, 0))


@pytest.fixture
def make_service(locks, event_bus, clock):
    """Build a ReservationService on a given session with test TTLs and the frozen clock."""
    def _make(session: AsyncSession) -> ReservationService:
        return ReservationService(
            session,
            locks=locks,
            events=event_bus,
            default_ttl_seconds=TEST_TTL_SECONDS,
            max_ttl_seconds=TEST_MAX_TTL_SECONDS,
            clock=clock,
        )
    return _make


@pytest.fixture
def reservation_service(test_session, make_service) -> ReservationService:
    return make_service(test_session)


@pytest.fixture
def ledger(test_session, locks, event_bus) -> StockLedger:
    return StockLedger(test_session, locks=locks, events=event_bus)


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    locks: VariantLockRegistry,
    event_bus: InventoryEventBus,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.
    Every request gets a fresh session from the test database.
    """
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_locks] = lambda: locks
    app.dependency_overrides[get_events] = lambda: event_bus

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Factories ---

@pytest.fixture
async def counted_line(test_session: AsyncSession) -> StockLine:
    """Non-serialized variant with 10 units on hand."""
    line = StockLine(
        variant_id=COUNTED_ID,
        sku="LAP-X1-16-512",
        total_quantity=10,
        reserved_quantity=0,
        sold_quantity=0,
        is_serialized=False,
    )
    test_session.add(line)
    await test_session.commit()
    await test_session.refresh(line)
    return line


@pytest.fixture
async def serialized_line(test_session: AsyncSession) -> StockLine:
    """Serialized variant with three registered units."""
    line = StockLine(
        variant_id=SERIAL_ID,
        sku="LAP-PRO-32-1TB",
        total_quantity=3,
        reserved_quantity=0,
        sold_quantity=0,
        is_serialized=True,
    )
    test_session.add(line)
    test_session.add_all([
        SerialNumber(serial_number=f"SN-000{i}", variant_id=SERIAL_ID)
        for i in (1, 2, 3)
    ])
    await test_session.commit()
    await test_session.refresh(line)
    return line


async def read_line(session_factory, variant_id: int) -> StockLine:
    """Load a stock line through a separate session (what another request would see)."""
    async with session_factory() as session:
        return await session.get(StockLine, variant_id)
