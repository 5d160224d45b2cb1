"""Startup and shutdown for a process hosting the engine.

``start_engine`` configures logging, opens the shared Redis pool and returns
the record store the services operate on. ``stop_engine`` releases the pool.
"""

import logging

from advfeed.config import Settings, get_settings
from advfeed.logging_config import setup_logging
from advfeed.redis_client import close_redis, get_redis, init_redis
from advfeed.store.redis_store import RedisRecordStore

logger = logging.getLogger(__name__)


async def start_engine(settings: Settings | None = None) -> RedisRecordStore:
    """Bring up logging and the Redis pool; return the shared store."""
    settings = settings or get_settings()
    setup_logging(settings)
    await init_redis(settings)
    store = RedisRecordStore(get_redis(), prefix=settings.redis_key_prefix, block_ms=settings.subscribe_block_ms)
    logger.info(
        "Engine %s started (%s), store prefix %s",
        settings.app_version,
        settings.environment,
        settings.redis_key_prefix,
    )
    return store


async def stop_engine() -> None:
    """Close the Redis pool opened by start_engine."""
    await close_redis()
    logger.info("Engine stopped")
