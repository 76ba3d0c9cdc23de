"""
Redis Client Module

Async Redis client singleton (redis.asyncio). Used only for the
cross-instance reminder scan lock; the worker runs without Redis too.

INFRASTRUCTURE ONLY - No business logic.
"""
import logging
from typing import Optional
import redis.asyncio as redis
import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


async def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client instance (singleton).

    Returns:
        Redis client instance if configured, None if REDIS_URL is not set
        or the client could not be created (graceful degradation)
    """
    global _redis_client

    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=10
            )
            logger.info("Redis client created")
        except Exception as e:
            logger.error(f"Failed to create Redis client: {e}")
            _redis_client = None
            return None

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check Redis connection health with PING.

    Does NOT raise - returns False on any error and updates REDIS_READY.
    """
    global REDIS_READY

    if not config.REDIS_URL:
        REDIS_READY = False
        return False

    try:
        client = await get_redis_client()
        if client is None:
            REDIS_READY = False
            return False

        REDIS_READY = bool(await client.ping())
        if REDIS_READY:
            logger.info(
                "REDIS_CONNECTED",
                extra={"component": "infra", "operation": "redis_health_check", "outcome": "success"}
            )
        else:
            logger.warning(
                "REDIS_CONNECTION_FAILED",
                extra={
                    "component": "infra",
                    "operation": "redis_health_check",
                    "outcome": "failed",
                    "reason": "ping_returned_false",
                }
            )
        return REDIS_READY

    except Exception as e:
        REDIS_READY = False
        logger.warning(
            "REDIS_CONNECTION_FAILED",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "failed",
                "reason": str(e)[:100]
            }
        )
        return False


async def close_redis_client():
    """
    Close Redis client connection pool.

    Safe to call multiple times - idempotent.
    """
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
