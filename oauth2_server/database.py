"""
Async database engine and sessions. SQLite via aiosqlite by default.
"""
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from oauth2_server.config import DATABASE_URL
from oauth2_server.models import Base

# SQLite: in-memory needs StaticPool so all sessions share the same DB (for tests)
if ":memory:" in DATABASE_URL:
    engine = create_async_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_async_engine(DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose pooled connections. An in-memory database is gone afterwards."""
    await engine.dispose()


async def get_db():
    """Dependency: yield a DB session."""
    async with SessionLocal() as db:
        yield db
