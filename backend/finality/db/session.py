from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from finality.core.config import Settings


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, future=True)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
