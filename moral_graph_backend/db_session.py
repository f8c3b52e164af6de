"""
Async database access.

FastAPI endpoints take a session from `get_async_session`, which commits when
the request succeeds. Task entrypoints open their own with
`get_async_session_context()` and commit explicitly through the repository.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from moral_graph_backend.config import DATABASE_URL as CONFIGURED_DATABASE_URL


def async_database_url(url: str) -> str:
    """Point plain postgres URLs at the asyncpg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


DATABASE_URL = async_database_url(CONFIGURED_DATABASE_URL)

async_engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


async def get_async_session():
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_async_session_context() -> AsyncSession:
    """Session for use as `async with get_async_session_context() as db:`."""
    return AsyncSessionLocal()
