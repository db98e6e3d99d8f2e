from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from quotebid.core.config import settings
from quotebid.core.exceptions import ServiceUnavailableError
from quotebid.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

# Global Redis connection pool
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None

RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
"""


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _redis_pool, _redis_client

    if _redis_pool is not None:
        return

    try:
        retry = Retry(
            backoff=ExponentialBackoff(base=1),
            retries=3,
        )

        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
            retry=retry,
            retry_on_error=[redis.ConnectionError, redis.TimeoutError],
            health_check_interval=30,
            decode_responses=True,
        )
        _redis_client = redis.Redis(connection_pool=_redis_pool)

        await _redis_client.ping()
        logger.info("redis.connected", url=settings.redis_url)

    except (redis.RedisError, OSError) as e:
        logger.error("redis.connection_failed", error=str(e))
        _redis_pool = None
        _redis_client = None
        raise ServiceUnavailableError(
            message="Redis connection failed",
            details={"error": str(e)},
        ) from e


async def get_redis_client() -> redis.Redis:
    if _redis_client is None:
        await init_redis_pool()
    return _redis_client


async def close_redis_pool() -> None:
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("redis.connections_closed")


class RedisLock:
    """Expiring lock: ``SET NX EX`` to take it, compare-and-delete to give it back."""

    def __init__(self, redis_client: redis.Redis, key: str, timeout: int = 30):
        self.redis = redis_client
        self.key = f"lock:{key}"
        self.timeout = timeout
        self.identifier: Optional[str] = None
        self.acquired = False

    async def acquire(self) -> bool:
        self.identifier = str(uuid.uuid4())
        try:
            self.acquired = bool(
                await self.redis.set(self.key, self.identifier, ex=self.timeout, nx=True)
            )
        except redis.RedisError as e:
            logger.error("lock.acquire_error", key=self.key, error=str(e))
            self.acquired = False

        if self.acquired:
            logger.debug("lock.acquired", key=self.key, identifier=self.identifier[:8])
        return self.acquired

    async def release(self) -> bool:
        if not self.acquired or not self.identifier:
            return False

        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, self.key, self.identifier)
        except redis.RedisError as e:
            logger.error("lock.release_error", key=self.key, error=str(e))
            return False

        self.acquired = False
        released = result > 0
        if released:
            logger.debug("lock.released", key=self.key, identifier=self.identifier[:8])
        return released

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.release()


async def health_check() -> Dict[str, Any]:
    """Check Redis health."""
    try:
        client = await get_redis_client()

        start_time = asyncio.get_running_loop().time()
        pong = await client.ping()
        response_time = (asyncio.get_running_loop().time() - start_time) * 1000

        return {
            "status": "healthy" if pong else "unhealthy",
            "response_time_ms": response_time,
        }

    except (redis.RedisError, ServiceUnavailableError, OSError) as e:
        logger.error("redis.health_check_failed", error=str(e))
        return {
            "status": "unhealthy",
            "error": str(e),
            "response_time_ms": None,
        }
