"""Database connection and session management."""

from typing import Any, AsyncGenerator, Dict

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from meshledger.config import settings


def get_async_database_url(url: str) -> str:
    """Map a plain database URL onto its async driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _engine_kwargs(url: str) -> Dict[str, Any]:
    """Pool settings; SQLite drivers manage their own pool."""
    kwargs: Dict[str, Any] = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return kwargs


async_database_url = get_async_database_url(settings.DATABASE_URL)

async_engine = create_async_engine(async_database_url, **_engine_kwargs(async_database_url))

# Create async session factory
async_session_maker = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def create_db_and_tables() -> None:
    """Create all database tables. Used for testing and initial setup."""
    import meshledger.models  # noqa: F401  registers tables on the metadata

    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session for FastAPI endpoints."""
    async with async_session_maker() as session:
        yield session
