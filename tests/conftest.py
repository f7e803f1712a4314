"""Pytest configuration and fixtures."""

import asyncio
import os
from typing import AsyncGenerator, Dict, Optional

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ALERT_EVENTS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "json")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select
from opentelemetry import trace

import meshledger.models  # noqa: F401
from meshledger.main import app
from meshledger.api.deps import get_db
from meshledger.clients.pinger import PingResult
from meshledger.middleware.rate_limit import limiter
from meshledger.models import (
    Equipment,
    EquipmentStatus,
    EquipmentType,
    IPAddress,
    IPAssignment,
    IPStatus,
)
from meshledger.monitor.scheduler import MonitorScheduler
from meshledger.utils.timeutils import utc_now

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakePinger:
    """Deterministic pinger: unknown addresses are unreachable."""

    def __init__(self, replies: Optional[Dict[str, PingResult]] = None):
        self.replies = dict(replies or {})
        self.calls = []

    def reachable(self, ip_address: str, latency_ms: float = 5.0) -> None:
        self.replies[ip_address] = PingResult(is_reachable=True, latency_ms=latency_ms)

    def unreachable(self, ip_address: str) -> None:
        self.replies.pop(ip_address, None)

    async def ping(self, ip_address: str, timeout: Optional[float] = None) -> PingResult:
        self.calls.append(ip_address)
        return self.replies.get(
            ip_address, PingResult(is_reachable=False, error="host unreachable")
        )


class ManualTicker:
    """Ticker that lets a scheduler run one more cycle per ``advance``."""

    def __init__(self):
        self._ticks = asyncio.Semaphore(0)

    async def __call__(self) -> None:
        await self._ticks.acquire()

    def advance(self, times: int = 1) -> None:
        for _ in range(times):
            self._ticks.release()


async def wait_for_cycles(scheduler: MonitorScheduler, cycles: int) -> None:
    """Yield to the loop until the scheduler completed ``cycles`` cycles."""
    for _ in range(1000):
        if scheduler.cycles >= cycles:
            return
        await asyncio.sleep(0.001)
    raise AssertionError(f"Scheduler ran {scheduler.cycles} cycles, expected {cycles}")


@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker,
) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def fake_pinger() -> FakePinger:
    return FakePinger()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker,
    fake_pinger: FakePinger,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with a test database session and monitor."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    limiter.reset()
    app.dependency_overrides[get_db] = override_get_db
    app.state.monitor = MonitorScheduler(
        session_factory, ticker=ManualTicker(), pinger=fake_pinger
    )

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    await app.state.monitor.stop()
    app.dependency_overrides.clear()


async def make_equipment(
    session: AsyncSession,
    equipment_id: str,
    name: Optional[str] = None,
    status: EquipmentStatus = EquipmentStatus.OFFLINE,
    equipment_type: EquipmentType = EquipmentType.HAUL_TRUCK,
    mesh_strength: int = 0,
) -> Equipment:
    equipment = Equipment(
        id=equipment_id,
        name=name or equipment_id,
        type=equipment_type,
        status=status,
        mesh_strength=mesh_strength,
    )
    session.add(equipment)
    await session.commit()
    return equipment


async def make_ip(
    session: AsyncSession,
    address: str,
    status: IPStatus = IPStatus.AVAILABLE,
    is_reserved: bool = False,
) -> IPAddress:
    ip_row = IPAddress(
        address=address,
        subnet="10.0.0.0/24",
        gateway="10.0.0.1",
        dns="10.0.0.1",
        status=status,
        is_reserved=is_reserved,
    )
    session.add(ip_row)
    await session.commit()
    return ip_row


async def force_assignment(
    session: AsyncSession,
    ip_row: IPAddress,
    equipment_id: str,
    assigned_at=None,
) -> IPAssignment:
    """Insert an active assignment directly, bypassing the ledger checks."""
    assignment = IPAssignment(
        ip_address_id=ip_row.id,
        equipment_id=equipment_id,
        user_id="seed",
        is_active=True,
        assigned_at=assigned_at or utc_now(),
    )
    ip_row.status = IPStatus.ASSIGNED
    session.add(assignment)
    session.add(ip_row)
    await session.commit()
    return assignment


async def fetch_all(session_factory: async_sessionmaker, model, *where):
    """Read rows through a fresh session, ignoring any cached identities."""
    async with session_factory() as session:
        result = await session.execute(select(model).where(*where))
        return list(result.scalars().all())


async def fetch_one(session_factory: async_sessionmaker, model, key):
    async with session_factory() as session:
        return await session.get(model, key)


@pytest.fixture(scope="session", autouse=True)
def shutdown_tracer_provider():
    """Shutdown OpenTelemetry TracerProvider after all tests complete.

    This fixture ensures that the BatchSpanProcessor's background thread
    is properly shut down before pytest closes stdout/stderr, preventing
    "I/O operation on closed file" errors.
    """
    yield

    try:
        tracer_provider = trace.get_tracer_provider()
        if hasattr(tracer_provider, "force_flush"):
            tracer_provider.force_flush(timeout_millis=5000)
        if hasattr(tracer_provider, "shutdown"):
            tracer_provider.shutdown()
    except Exception:
        pass
