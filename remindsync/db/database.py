from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from remindsync.config import to_async_database_url

# Create base class for models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the local store."""
    return create_async_engine(to_async_database_url(database_url), echo=echo)


def build_session_factory(engine: AsyncEngine):
    """Create an async session maker bound to the engine."""
    return sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


async def init_db(engine: AsyncEngine):
    """Initialize database."""
    # Register every table on the metadata before creating them
    import remindsync.models.reminder  # noqa: F401
    import remindsync.models.sync_queue  # noqa: F401
    import remindsync.models.error_log  # noqa: F401
    import remindsync.models.health_state  # noqa: F401

    async with engine.begin() as conn:
        # Create tables
        await conn.run_sync(Base.metadata.create_all)
