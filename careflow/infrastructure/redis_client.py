import json  # type: ignore[import-untyped]
from typing import Any, Optional

import structlog  # type: ignore[import-untyped]
from careflow.core.config import settings
from redis import asyncio as aioredis  # type: ignore[import-untyped]

logger = structlog.get_logger()


class RedisClient:
    """
    Best-effort JSON key/value store. Every operation degrades to a falsy
    result when Redis is unavailable instead of raising.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.redis_url
        self.redis: Optional[Any] = None
        self.pool: Optional[Any] = None

    async def connect(self):
        try:
            self.pool = aioredis.ConnectionPool.from_url(
                self.url,
                max_connections=10,
                encoding="utf-8",
                decode_responses=True,
                socket_keepalive=True,
            )
            self.redis = aioredis.Redis(connection_pool=self.pool)
            await self.redis.ping()
            logger.info("redis_connected", url=self.url, pool_size=10)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            self.redis = None

    async def disconnect(self):
        if self.redis:
            await self.redis.close()
        if self.pool:
            await self.pool.disconnect()
        logger.info("redis_disconnected")

    @property
    def is_connected(self) -> bool:
        return self.redis is not None

    async def get(self, key: str) -> Optional[Any]:
        """Decoded JSON value, or None when missing, malformed or unreachable."""
        if not self.redis:
            return None

        try:
            value = await self.redis.get(key)
            if value:
                return json.loads(value)
            return None
        except json.JSONDecodeError as e:
            logger.warning("redis_get_malformed_value", key=key, error=str(e))
            return None
        except Exception as e:
            logger.error("redis_get_error", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, expire: int = 3600) -> bool:
        if not self.redis:
            return False

        try:
            serialized = json.dumps(value)
            await self.redis.set(key, serialized, ex=expire)
            return True
        except Exception as e:
            logger.error("redis_set_error", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        if not self.redis:
            return False

        try:
            return bool(await self.redis.exists(key))
        except Exception as e:
            logger.error("redis_exists_error", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self.redis:
            return False

        try:
            await self.redis.delete(key)
            return True
        except Exception as e:
            logger.error("redis_delete_error", key=key, error=str(e))
            return False


redis_client = RedisClient()
