"""Database configuration and connection management."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from clinic_scheduling.config import Settings, settings
from clinic_scheduling.models import metadata


def create_engine_from_settings(config: Settings | None = None) -> AsyncEngine:
    """Create an async engine with connection pooling for the configured database."""
    config = config or settings
    url = config.async_database_url

    if url.startswith("sqlite"):
        return create_async_engine(url, echo=config.debug)

    return create_async_engine(
        url,
        echo=config.debug,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "application_name": config.app_name,
            },
        },
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create every clinic booking table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def check_database_connection(engine: AsyncEngine) -> bool:
    """Check if database connection is healthy."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
