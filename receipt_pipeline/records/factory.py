"""Factory for creating the record store based on configuration."""

import logging

from redis.asyncio import Redis

from receipt_pipeline.records.redis_store import RedisRecordStore
from receipt_pipeline.records.store import InMemoryRecordStore, RecordStore
from receipt_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)


def create_record_store(settings: Settings, redis: Redis | None = None) -> RecordStore:
    """Build the record store selected by ``settings.store_backend``.

    Args:
        settings: Application settings
        redis: Existing Redis client to reuse (the arq pool in the worker);
            a new client is created from ``redis_url`` when omitted

    Returns:
        Configured RecordStore
    """
    if settings.store_backend == "memory":
        logger.warning("Using in-memory record store; records are lost on restart")
        return InMemoryRecordStore()

    client = redis or Redis.from_url(settings.redis_url)
    logger.info(f"Using Redis record store at {settings.redis_url}")
    return RedisRecordStore(client, status_ttl_seconds=settings.status_ttl_seconds)
