import os

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import datetime as dt

import fakeredis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fleet_guardian import models  # noqa: F401  (registers tables)
from fleet_guardian.database import init_models
from fleet_guardian.models import PositionSample
from fleet_guardian.ratelimit import RateLimiter

UTC = dt.timezone.utc
T0 = dt.datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


class FakeClock:
    """Wall clock for the limiter and sleep for the client, advanced together."""

    def __init__(self, start: float = 1_772_438_400.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def limiter(clock, redis_server) -> RateLimiter:
    return RateLimiter(fakeredis.FakeRedis(server=redis_server), provider="test", max_calls=3, clock=clock)


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as s:
        yield s


async def add_sample(db, minutes: float = 0, device_id: str = "dev-1", **fields) -> PositionSample:
    values = {
        "latitude": 6.5244,
        "longitude": 3.3792,
        "speed_kmh": 0.0,
        "ignition_on": True,
        "ignition_confidence": 1.0,
        "ignition_method": "status_bit",
    }
    values.update(fields)
    sample = PositionSample(
        device_id=device_id,
        observed_at=T0 + dt.timedelta(minutes=minutes),
        **values,
    )
    db.add(sample)
    await db.commit()
    return sample
