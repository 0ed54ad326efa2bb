"""
Database Session — Async SQLAlchemy
=====================================
Plain factories; the composition root owns the engine.
"""

from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from kbsync.db.models import Base


def create_engine_and_sessionmaker(
    url: str, echo: bool = False
) -> Tuple[AsyncEngine, async_sessionmaker]:
    options = {} if url.startswith("sqlite") else {"pool_size": 20, "pool_pre_ping": True}
    engine = create_async_engine(url, echo=echo, **options)
    sessionmaker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, sessionmaker


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev convenience — use Alembic in prod)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
