"""
Redis-backed key-value store.
"""

import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from ..errors import StorageUnavailableError
from .base import KVStore

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(operation: str, key: str):
    """Translate backend failures into StorageUnavailableError."""
    try:
        yield
    except (RedisError, OSError) as e:
        logger.warning(f"Redis {operation} failed for {key}: {e}")
        raise StorageUnavailableError(message=f"{operation} {key}: {e}") from e


class RedisKVStore(KVStore):
    """
    KVStore over ``redis.asyncio``.

    The hash + index write runs inside MULTI/EXEC so readers never observe
    one without the other. Slot rewrites WATCH the list and give up
    when it changed underneath them.
    """

    def __init__(self, redis_client: aioredis.Redis):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str, socket_timeout: Optional[float] = None) -> "RedisKVStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    # =========================================================================
    # Hashes
    # =========================================================================

    async def hgetall(self, key: str) -> Dict[str, str]:
        with _storage_errors("HGETALL", key):
            return await self.redis.hgetall(key) or {}

    async def hset(self, key: str, mapping: Dict[str, str]) -> None:
        if not mapping:
            return
        with _storage_errors("HSET", key):
            await self.redis.hset(key, mapping=mapping)

    # =========================================================================
    # Keys
    # =========================================================================

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _storage_errors("DEL", ",".join(keys)):
            return int(await self.redis.delete(*keys))

    async def scan_keys(self, pattern: str) -> List[str]:
        with _storage_errors("SCAN", pattern):
            return [key async for key in self.redis.scan_iter(match=pattern, count=500)]

    # =========================================================================
    # Lists
    # =========================================================================

    async def lpush(self, key: str, value: str) -> int:
        with _storage_errors("LPUSH", key):
            return int(await self.redis.lpush(key, value))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with _storage_errors("LRANGE", key):
            return await self.redis.lrange(key, start, stop)

    async def llen(self, key: str) -> int:
        with _storage_errors("LLEN", key):
            return int(await self.redis.llen(key))

    async def lset_if(self, key: str, index: int, expected: str, value: str) -> bool:
        with _storage_errors("LSET", key):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if await pipe.lindex(key, index) != expected:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.lset(key, index, value)
                    await pipe.execute()
                    return True
                except WatchError:
                    return False

    async def replace_list(self, key: str, values: Sequence[str]) -> None:
        with _storage_errors("REPLACE", key):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if values:
                    pipe.rpush(key, *values)
                await pipe.execute()

    # =========================================================================
    # Sorted sets
    # =========================================================================

    async def zadd(self, key: str, member: str, score: float) -> None:
        with _storage_errors("ZADD", key):
            await self.redis.zadd(key, {member: score})

    async def zrange(self, key: str, start: int, stop: int, rev: bool = False) -> List[str]:
        with _storage_errors("ZRANGE", key):
            if rev:
                return await self.redis.zrevrange(key, start, stop)
            return await self.redis.zrange(key, start, stop)

    async def zscore(self, key: str, member: str) -> Optional[float]:
        with _storage_errors("ZSCORE", key):
            return await self.redis.zscore(key, member)

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _storage_errors("ZREM", key):
            return int(await self.redis.zrem(key, *members))

    # =========================================================================
    # Sets
    # =========================================================================

    async def sadd(self, key: str, member: str) -> bool:
        with _storage_errors("SADD", key):
            return int(await self.redis.sadd(key, member)) == 1

    # =========================================================================
    # Multi-key
    # =========================================================================

    async def write_hash_with_index(
        self,
        hash_key: str,
        mapping: Dict[str, str],
        index_key: str,
        member: str,
        score: float,
    ) -> None:
        with _storage_errors("MULTI", hash_key):
            async with self.redis.pipeline(transaction=True) as pipe:
                if mapping:
                    pipe.hset(hash_key, mapping=mapping)
                pipe.zadd(index_key, {member: score})
                await pipe.execute()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ping(self) -> bool:
        with _storage_errors("PING", "-"):
            return bool(await self.redis.ping())

    async def close(self) -> None:
        await self.redis.aclose()
