"""Database engine and async session factory."""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from hpi_identity.config import settings
from hpi_identity.models.audit import Base

engine = create_async_engine(settings.database_url, echo=settings.debug)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables that don't yet exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

