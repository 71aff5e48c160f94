from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rentaldesk.app.core.config import settings


# SQLite (local runs and tests) does not take queue pool sizing.
_pool_options = (
    {}
    if settings.DATABASE_URL.startswith("sqlite")
    else {"pool_size": settings.DB_POOL_SIZE, "max_overflow": settings.DB_MAX_OVERFLOW}
)

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    **_pool_options,
)

SessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a scoped AsyncSession for request handling."""
    async with SessionLocal() as session:
        yield session
