"""Scheduling service wiring and lifespan."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from clinic_scheduling.config import Settings, settings
from clinic_scheduling.core.logging import configure_logging
from clinic_scheduling.core.redis_client import (
    CacheManager,
    close_redis_connections,
    get_async_redis_client,
    get_redis_client,
)
from clinic_scheduling.database import check_database_connection, create_engine_from_settings
from clinic_scheduling.scheduling.conflict_resolver import ConflictResolver
from clinic_scheduling.scheduling.locks import KeyLockManager, LockManager, RedisLockManager
from clinic_scheduling.services.appointment_repository import SqlAppointmentRepository
from clinic_scheduling.services.entity_store import SqlEntityStore
from clinic_scheduling.services.scheduling_service import SchedulingService

logger = structlog.get_logger()


def build_lock_manager(config: Settings) -> LockManager:
    """Select the lock backend named by LOCK_BACKEND."""
    if config.uses_redis_locks:
        return RedisLockManager(get_async_redis_client(), lease_seconds=config.lock_lease_seconds)
    return KeyLockManager()


def build_scheduling_service(engine: AsyncEngine, config: Settings) -> SchedulingService:
    """Assemble a scheduling service over the SQL stores."""
    cache = None
    if config.entity_cache_enabled:
        cache = CacheManager(get_redis_client(), ttl=config.entity_cache_ttl_seconds)

    return SchedulingService(
        entity_store=SqlEntityStore(engine, cache_manager=cache),
        repository=SqlAppointmentRepository(engine),
        resolver=ConflictResolver.from_settings(build_lock_manager(config), config),
    )


@asynccontextmanager
async def scheduling_lifespan(
    config: Settings | None = None,
) -> AsyncGenerator[SchedulingService, None]:
    """
    Scheduling service lifespan manager.

    Configures logging, connects the database, rebuilds the interval index
    from persisted appointments, and releases connections on exit.
    """
    config = config or settings
    configure_logging(config)

    # Startup
    logger.info("scheduling_startup", environment=config.environment)
    engine = create_engine_from_settings(config)

    if await check_database_connection(engine):
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed", database_url=config.async_database_url)

    try:
        service = build_scheduling_service(engine, config)
        await service.rebuild_index()
        yield service
    finally:
        # Shutdown
        logger.info("scheduling_shutdown")
        await engine.dispose()
        logger.info("database_connections_closed")
        if config.uses_redis_locks or config.entity_cache_enabled:
            await close_redis_connections()
            logger.info("redis_connection_closed")
