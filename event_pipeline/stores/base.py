"""
Fast store interface.

The fast store backs fingerprints, idempotency keys, aggregation locks,
realtime metric state and the metrics cache. Keys are namespaced by purpose
(``fingerprint:*``, ``idempotency:*``, ``lock:*``, ``metric:*``, ``cache:*``,
``session:*``).
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Iterable, List, Optional, Set, Tuple, TypeVar

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from event_pipeline.errors import TransientStoreError

T = TypeVar("T")

# Driver errors that mean "store unavailable" rather than a programming error
TRANSIENT_ERRORS = (asyncio.TimeoutError, RedisError, SQLAlchemyError, OSError)


async def with_timeout(awaitable: Awaitable[T], *, store: str, operation: str, timeout: float) -> T:
    """
    Await a store call with a deadline.

    Raises:
        TransientStoreError: On timeout or any driver-level failure
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TRANSIENT_ERRORS as e:
        raise TransientStoreError(store, operation, e) from e


class FastStore(ABC):
    """
    Abstract fast key-value store.

    Values are strings; sorted sets hold (member, score) pairs and sets hold
    strings. TTLs are in seconds.
    """

    name = "fast_store"

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get a string value"""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        """Set a value. With ``nx`` only when absent; returns whether it was written."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed"""

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically delete ``key`` only when it holds ``value``"""

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        """Set the TTL of an existing key"""

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining TTL, None when the key is missing or persistent"""

    @abstractmethod
    async def incrbyfloat(self, key: str, amount: float) -> float:
        """Increment a numeric value, creating it at zero"""

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """Keys matching a glob pattern"""

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None:
        """Add a member to a sorted set"""

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[Tuple[str, float]]:
        """Members with min_score <= score <= max_score, ascending"""

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        """Remove members within the score range"""

    @abstractmethod
    async def zcard(self, key: str) -> int:
        """Sorted set size"""

    @abstractmethod
    async def ztrim(self, key: str, keep_last: int) -> int:
        """Keep only the ``keep_last`` highest-ranked members"""

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add set members"""

    @abstractmethod
    async def smembers(self, key: str) -> Set[str]:
        """All set members"""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove set members"""

    @abstractmethod
    async def ping(self) -> bool:
        """Health check"""

    async def close(self) -> None:
        """Release connections"""

    # -------------------------------------------------------------------------
    # Helpers built on the primitives
    # -------------------------------------------------------------------------

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set_json(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl=ttl)

    async def delete_pattern(self, pattern: str) -> int:
        keys = await self.keys(pattern)
        if not keys:
            return 0
        return await self.delete(*keys)

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        """
        Try to take a lock.

        Returns:
            The owner token when acquired, None when someone else holds it
        """
        token = uuid.uuid4().hex
        if await self.set(key, token, ttl=ttl, nx=True):
            return token
        return None

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock only if we still own it"""
        return await self.delete_if_equals(key, token)


def chunked(items: Iterable[T], size: int) -> Iterable[List[T]]:
    """Split an iterable into lists of at most ``size`` items"""
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
