"""Process-wide Redis connection handle.

Created once by the application lifespan and passed to the stores that need
it. The underlying client is built lazily on first use so constructing the
handle never performs I/O.
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisConnection:
    """Owns one ``redis.asyncio`` client for the lifetime of the process."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self._client: aioredis.Redis | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def get_client(self) -> aioredis.Redis:
        """Return the shared client, creating it on first use."""
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    self._client = aioredis.from_url(
                        self.redis_url,
                        decode_responses=True,
                        socket_timeout=self.socket_timeout,
                        socket_connect_timeout=self.socket_timeout,
                    )
                    logger.info("Redis client created")
        return self._client

    async def reconnect(self) -> aioredis.Redis:
        """Drop pooled connections after a connection loss and return the client."""
        client = await self.get_client()
        await client.connection_pool.disconnect()
        logger.warning("Redis connection pool reset after connection loss")
        return client

    async def ping(self) -> bool:
        """Check if Redis is reachable."""
        try:
            client = await self.get_client()
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close the client. Safe to call when never connected."""
        if self._client is None:
            return
        try:
            await self._client.aclose()
            logger.info("Redis connection closed")
        finally:
            self._client = None
