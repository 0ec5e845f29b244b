# backend/app/db/database.py
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from typing import AsyncGenerator

from app.core.config import settings
from app.core.logging import logger

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://"),
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    echo=settings.DEBUG,
)

# Create async session factory
async_session_local = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session dependency"""
    async with async_session_local() as session:
        try:
            yield session
        finally:
            await session.close()


async def seed_default_plans(session: AsyncSession) -> int:
    """Insert any missing default plans; existing rows are left untouched."""
    from app.db.repositories.plan_repository import PlanRepository

    created = await PlanRepository(session).ensure_defaults()
    await session.commit()
    if created:
        logger.info(f"Seeded {created} default plans")
    return created


async def init_db():
    """Initialize database (create tables, seed plans)"""
    from app.db.base import Base
    # Import all models to ensure they're registered
    from app.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_local() as session:
        await seed_default_plans(session)


async def close_db():
    """Close database connections"""
    await engine.dispose()
