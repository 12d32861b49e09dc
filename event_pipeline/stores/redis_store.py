"""
Redis fast store.

Connection pooling through redis.asyncio with every command bounded by the
configured operation timeout.
"""

from typing import List, Optional, Set, Tuple

import structlog
from redis.asyncio import ConnectionPool, Redis

from event_pipeline.config.settings import RedisSettings
from .base import FastStore, chunked, with_timeout

logger = structlog.get_logger(__name__)

# Compare-and-delete so a lock is only released by its owner
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisFastStore(FastStore):
    """FastStore backed by a shared Redis instance"""

    name = "redis"

    def __init__(self, client: Redis, operation_timeout: float = 2.0):
        self._client = client
        self._timeout = operation_timeout
        self._release = client.register_script(_RELEASE_SCRIPT)

    @classmethod
    async def connect(cls, config: RedisSettings) -> "RedisFastStore":
        """Build a pooled client from settings and verify it responds"""
        pool = ConnectionPool.from_url(
            config.get_url(),
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            decode_responses=True,
        )
        client = Redis(connection_pool=pool)
        store = cls(client, operation_timeout=config.operation_timeout_seconds)
        await store.ping()
        logger.info("Redis connection established", host=config.host, port=config.port)
        return store

    async def _run(self, operation: str, awaitable):
        return await with_timeout(awaitable, store=self.name, operation=operation, timeout=self._timeout)

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self._client.get(key))

    async def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        px = int(ttl * 1000) if ttl else None
        result = await self._run("set", self._client.set(key, value, px=px, nx=nx))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._run("delete", self._client.delete(*keys))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        result = await self._run("delete_if_equals", self._release(keys=[key], args=[value]))
        return bool(result)

    async def expire(self, key: str, ttl: float) -> bool:
        return bool(await self._run("expire", self._client.pexpire(key, int(ttl * 1000))))

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._run("ttl", self._client.pttl(key))
        if remaining is None or remaining < 0:
            return None
        return remaining / 1000.0

    async def incrbyfloat(self, key: str, amount: float) -> float:
        return float(await self._run("incrbyfloat", self._client.incrbyfloat(key, amount)))

    async def keys(self, pattern: str) -> List[str]:
        async def _scan() -> List[str]:
            return [key async for key in self._client.scan_iter(match=pattern, count=500)]

        return sorted(await self._run("scan", _scan()))

    async def delete_pattern(self, pattern: str) -> int:
        removed = 0
        for batch in chunked(await self.keys(pattern), 500):
            removed += await self.delete(*batch)
        return removed

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self._run("zadd", self._client.zadd(key, {member: score}))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[Tuple[str, float]]:
        rows = await self._run(
            "zrangebyscore",
            self._client.zrangebyscore(key, min_score, max_score, withscores=True),
        )
        return [(member, float(score)) for member, score in rows]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return await self._run("zremrangebyscore", self._client.zremrangebyscore(key, min_score, max_score))

    async def zcard(self, key: str) -> int:
        return await self._run("zcard", self._client.zcard(key))

    async def ztrim(self, key: str, keep_last: int) -> int:
        return await self._run("ztrim", self._client.zremrangebyrank(key, 0, -(keep_last + 1)))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("sadd", self._client.sadd(key, *members))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._run("smembers", self._client.smembers(key)))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("srem", self._client.srem(key, *members))

    async def ping(self) -> bool:
        return bool(await self._run("ping", self._client.ping()))

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")
