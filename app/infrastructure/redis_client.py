# app/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class FastRedisClient:
    """Pooled async Redis client; operations degrade to a neutral result on failure"""

    def __init__(self, url: str | None = None, max_connections: int = 20):
        self.url = url
        self.max_connections = max_connections
        self.pool = None
        self.client = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        redis_url = self.url or settings.REDIS_URL
        if not redis_url:
            raise RuntimeError("REDIS_URL is not configured")

        try:
            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Fast Redis client initialized successfully", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def add_to_set(self, key: str, member: str, ttl_s: int | None = None) -> bool:
        """SADD a member and refresh the key TTL in one transaction."""
        try:
            await self._ensure_initialized()
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.sadd(key, member)
                if ttl_s:
                    pipe.expire(key, ttl_s)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error("Redis SADD failed", key=key[:30], error=str(e))
            return False

    async def remove_from_set(self, key: str, member: str) -> bool:
        try:
            await self._ensure_initialized()
            return await self.client.srem(key, member) > 0
        except Exception as e:
            logger.error("Redis SREM failed", key=key[:30], error=str(e))
            return False

    async def set_size(self, key: str) -> int | None:
        """Return SCARD for the key, or None when Redis cannot answer."""
        try:
            await self._ensure_initialized()
            return int(await self.client.scard(key))
        except Exception as e:
            logger.error("Redis SCARD failed", key=key[:30], error=str(e))
            return None


# Global instance
fast_redis = FastRedisClient()
