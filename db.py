# ===============================================================
# db.py: Central async SQLAlchemy setup
# ===============================================================
import logging
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
)
from sqlalchemy.orm import sessionmaker

# Import Base and models so metadata is complete
from base import Base
import models  # noqa: F401

logger = logging.getLogger(__name__)


# -------------------------------------------------
# Database URL normalization
# -------------------------------------------------
def normalize_database_url(database_url: str) -> str:
    """Ensure the asyncpg driver is used for Postgres URLs."""
    if not database_url:
        raise RuntimeError("❌ DATABASE_URL not set in environment variables")

    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql://") and "+asyncpg" not in database_url:
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


# -------------------------------------------------
# Engine & Async Session Factory
# -------------------------------------------------
def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(database_url)
    kwargs = {"echo": echo, "future": True}
    if url.startswith("postgresql"):
        kwargs.update(
            pool_pre_ping=True,     # checks if connection is alive
            pool_recycle=1800,      # recycle connections every 30 mins
        )
    return create_async_engine(url, **kwargs)


def build_sessionmaker(engine: AsyncEngine):
    """The async session factory every service receives at construction."""
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# -------------------------------------------------
# Database Initialization (development only)
# -------------------------------------------------
async def init_db(engine: AsyncEngine):
    """Create tables directly; production uses migrations/init_schema_v1.py."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ Database initialized (development use only)")


# -------------------------------------------------
# Health Check Utility
# -------------------------------------------------
async def check_connection(engine: AsyncEngine) -> bool:
    """Quick check if DB is reachable."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(lambda _: None)
        logger.info("🔌 Database connection OK")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        raise
