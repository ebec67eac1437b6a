import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardsync.config import Settings
from cardsync.models.base import Base
from cardsync.models import session_event, checkpoint  # noqa: F401
from cardsync.game.session_store import SessionStore
from cardsync.game.session_supervisor import SessionSupervisor
from cardsync.main import create_app

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Callable wall clock that only moves when a test advances it."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        MIN_PARTICIPANTS=2,
        REORDER_WINDOW=4,
        REORDER_BUFFER_LIMIT=16,
        DEDUP_WINDOW_SIZE=1_000,
        GRACE_PERIOD_SECONDS=60.0,
        IDLE_TIMEOUT_SECONDS=300.0,
        SWEEP_INTERVAL_SECONDS=3600.0,
        CHECKPOINT_EVERY_EVENTS=50,
        CHECKPOINT_INTERVAL_SECONDS=3600.0,
        CHECKPOINT_TIMEOUT_SECONDS=1.0,
        STORE_RETRY_BASE_SECONDS=0.01,
        STORE_RETRY_MAX_SECONDS=0.05,
        EVENT_WRITE_ATTEMPTS=2,
        BACKFILL_RETRY_SECONDS=10.0,
    )


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_factory):
    return SessionStore(session_factory)


@pytest_asyncio.fixture
async def supervisor(store, test_settings, clock):
    sup = SessionSupervisor(store, settings=test_settings, clock=clock)
    yield sup
    await sup.stop()


@pytest_asyncio.fixture
async def client(supervisor):
    app = create_app()
    app.state.supervisor = supervisor

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
