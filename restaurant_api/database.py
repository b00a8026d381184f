import logging
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from restaurant_api.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, echo=False)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as db:
        yield db


async def rollback_quietly(db: AsyncSession) -> None:
    """Roll back after a best-effort step failed; a failing rollback is logged, not raised."""
    try:
        await db.rollback()
    except Exception:
        logger.exception("Session rollback failed")
