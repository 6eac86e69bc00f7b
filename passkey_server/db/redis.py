import redis.asyncio as redis
from typing import Optional, Any
import json
import structlog

from passkey_server.core.config import settings

logger = structlog.get_logger()

class RedisClient:
    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self.pool = None

    async def init_pool(self):
        """Initialize Redis connection pool"""
        try:
            self.pool = redis.ConnectionPool.from_url(
                str(self.url),
                max_connections=50,
                decode_responses=True
            )

            # Test connection
            async with redis.Redis(connection_pool=self.pool) as conn:
                await conn.ping()

            logger.info("Redis pool initialized")
        except Exception as e:
            logger.error("Redis initialization failed", error=str(e))
            raise

    async def close_pool(self):
        """Close Redis connection pool"""
        if self.pool:
            await self.pool.disconnect()
            logger.info("Redis pool closed")

    async def get_client(self) -> redis.Redis:
        """Get Redis client from pool"""
        return redis.Redis(connection_pool=self.pool)

    # Cache operations
    async def cache_set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None
    ):
        """Set value in cache"""
        r = await self.get_client()
        serialized = json.dumps(value)
        if ttl:
            await r.setex(key, ttl, serialized)
        else:
            await r.set(key, serialized)

    async def cache_pop(self, key: str) -> Optional[Any]:
        """Atomically get and delete a value (GETDEL, Redis >= 6.2)"""
        r = await self.get_client()
        value = await r.getdel(key)
        if value:
            return json.loads(value)
        return None


# Global client instance
redis_client = RedisClient()

async def init_pool():
    await redis_client.init_pool()

async def close_pool():
    await redis_client.close_pool()
