import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REMOTE_MODE", "off")

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from backend.bunergy.game_state import GameStore  # noqa: E402
from backend.bunergy.local_store import MemoryStore  # noqa: E402
from backend.bunergy.models import Base  # noqa: E402
from backend.bunergy.remote_store import SqlTableClient  # noqa: E402

# 2026-03-11 12:00:00 UTC (среда)
NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def port():
    return MemoryStore()


@pytest.fixture
def store(port, clock):
    return GameStore.load(port, clock=clock)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
def table_client(session_factory):
    return SqlTableClient(session_factory)
