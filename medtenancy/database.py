import logging
from collections.abc import AsyncIterator

from fastapi import Request
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from medtenancy.config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _pool_options(url: str, pool_size: int, settings: Settings) -> dict:
    # SQLite engines pick their own pool class and reject sizing arguments
    if make_url(url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": 0,
        "pool_timeout": settings.tenant_pool_timeout,
        "pool_recycle": settings.tenant_pool_recycle,
        "pool_pre_ping": True,
    }


def create_platform_engine(settings: Settings) -> AsyncEngine:
    """Engine for the shared platform registry database."""
    if settings.environment == "production":
        return create_async_engine(
            settings.platform_database_url,
            **_pool_options(settings.platform_database_url, settings.platform_pool_size, settings),
        )
    return create_async_engine(
        settings.platform_database_url,
        echo=settings.debug,
        **_pool_options(settings.platform_database_url, settings.platform_pool_size, settings),
    )


def create_tenant_engine(database_name: str, settings: Settings) -> AsyncEngine:
    """Engine bound to one tenant database, with its own connection ceiling."""
    url = settings.tenant_database_url.format(database=database_name)
    return create_async_engine(url, **_pool_options(url, settings.tenant_pool_size, settings))


def create_admin_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.admin_database_url, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield a platform registry session bound to the running application."""
    session_factory = request.app.state.platform_sessions
    async with session_factory() as db:
        try:
            yield db
        except Exception as e:
            logger.error("Platform session error: %s", type(e).__name__)
            await db.rollback()
            raise
