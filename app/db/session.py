from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from app.config.settings import settings


def create_engine_from_settings(database_url: str = settings.DATABASE_URL) -> AsyncEngine:
    """Build an async engine; pool options apply to server databases only."""
    options = {"echo": settings.DATABASE_ECHO, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20, pool_recycle=3600)
    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


engine = create_engine_from_settings()
AsyncSessionLocal = create_session_factory(engine)

