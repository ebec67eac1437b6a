"""Process-wide async engine and the session factory handed to SessionStore."""
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cardsync.config import settings
from cardsync.models import checkpoint, session_event  # noqa: F401
from cardsync.models.base import Base

engine = create_async_engine(settings.DATABASE_URL, echo=False)

async_session = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create missing tables; migrations under alembic/ own the real schema."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
