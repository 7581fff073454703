"""
Redis Connection Module

Shared redis.asyncio client with:
- Connection pooling
- Health checks
- Graceful shutdown

Used for webhook dedup records when WEBHOOK_DEDUP_BACKEND=redis.
"""

import time
from typing import Optional

import structlog
from redis.asyncio import Redis, ConnectionPool

from src.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )

    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("redis_connected")
    except Exception as e:
        logger.error("redis_connect_failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("redis_closed")


async def check_redis_health() -> dict:
    if _redis_client is None:
        return {"status": "disabled"}
    try:
        start = time.perf_counter()
        await _redis_client.ping()
        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}
