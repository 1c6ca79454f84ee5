# ================================================================
# services/fast_cache.py
# Short-lived Redis accelerator in front of the durable tier
# ================================================================
import json
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def build_redis_client(redis_url: str):
    """Process-scoped client; build once at startup."""
    return redis.Redis.from_url(redis_url, decode_responses=True)


class FastCache:
    """
    Fail-open wrapper: every Redis error is logged and reported as a miss
    (or a no-op for writes) so a cache fault never fails a request.
    """

    def __init__(self, client, default_ttl: int = 3600):
        self.client = client
        self.default_ttl = default_ttl

    async def get_json(self, key: str):
        try:
            raw = await self.client.get(key)
        except (RedisError, OSError) as e:
            logger.error(f"Redis get error for {key}: {e}")
            return None

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Discarding undecodable fast-cache value for {key}")
            return None

    async def set_json(self, key: str, value, ttl_seconds: int | None = None) -> bool:
        try:
            await self.client.set(key, json.dumps(value), ex=ttl_seconds or self.default_ttl)
            return True
        except (RedisError, OSError) as e:
            logger.error(f"Redis set error for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys) or 0)
        except (RedisError, OSError) as e:
            logger.error(f"Redis delete error: {e}")
            return 0

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except AttributeError:
            await self.client.close()
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️ Error while closing Redis client: {e}")
