"""
In-process fast store.

Used for development, single-instance deployments and tests. The clock is
injectable so TTL expiry can be driven deterministically.
"""

import asyncio
import fnmatch
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import structlog

from .base import FastStore

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class MemoryFastStore(FastStore):
    """
    Dictionary-backed FastStore.

    Example:
        clock = FakeClock()
        store = MemoryFastStore(clock=clock)
        await store.set("fingerprint:abc", "1", ttl=60, nx=True)
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _typed(self, key: str, kind: type, factory: Callable[[], Any]) -> _Entry:
        entry = self._live(key)
        if entry is None:
            entry = _Entry(factory())
            self._data[key] = entry
        elif not isinstance(entry.value, kind):
            raise TypeError(f"WRONGTYPE key {key!r} holds {type(entry.value).__name__}")
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is None:
            return None
        if not isinstance(entry.value, str):
            raise TypeError(f"WRONGTYPE key {key!r} is not a string")
        return entry.value

    async def set(self, key: str, value: str, ttl: Optional[float] = None, nx: bool = False) -> bool:
        async with self._lock:
            if nx and self._live(key) is not None:
                return False
            self._data[key] = _Entry(str(value), self._expiry(ttl))
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key) is not None:
                del self._data[key]
                removed += 1
        return removed

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != value:
                return False
            del self._data[key]
            return True

    async def expire(self, key: str, ttl: float) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._expiry(ttl)
        return True

    async def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return max(0.0, entry.expires_at - self._clock())

    async def incrbyfloat(self, key: str, amount: float) -> float:
        async with self._lock:
            entry = self._live(key)
            current = float(entry.value) if entry is not None else 0.0
            new_value = current + amount
            expires_at = entry.expires_at if entry is not None else None
            self._data[key] = _Entry(repr(new_value), expires_at)
            return new_value

    async def keys(self, pattern: str) -> List[str]:
        return sorted(
            key for key in list(self._data)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        )

    async def zadd(self, key: str, member: str, score: float) -> None:
        async with self._lock:
            entry = self._typed(key, dict, dict)
            entry.value[member] = float(score)

    def _sorted(self, key: str) -> List[Tuple[str, float]]:
        entry = self._live(key)
        if entry is None:
            return []
        if not isinstance(entry.value, dict):
            raise TypeError(f"WRONGTYPE key {key!r} is not a sorted set")
        return sorted(entry.value.items(), key=lambda item: (item[1], item[0]))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[Tuple[str, float]]:
        return [(m, s) for m, s in self._sorted(key) if min_score <= s <= max_score]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        async with self._lock:
            doomed = [m for m, s in self._sorted(key) if min_score <= s <= max_score]
            members = self._data[key].value if doomed else {}
            for member in doomed:
                del members[member]
            return len(doomed)

    async def zcard(self, key: str) -> int:
        return len(self._sorted(key))

    async def ztrim(self, key: str, keep_last: int) -> int:
        async with self._lock:
            ordered = self._sorted(key)
            excess = ordered[: max(0, len(ordered) - keep_last)]
            for member, _ in excess:
                del self._data[key].value[member]
            return len(excess)

    async def sadd(self, key: str, *members: str) -> int:
        async with self._lock:
            entry = self._typed(key, set, set)
            before = len(entry.value)
            entry.value.update(members)
            return len(entry.value) - before

    async def smembers(self, key: str) -> Set[str]:
        entry = self._live(key)
        if entry is None:
            return set()
        if not isinstance(entry.value, set):
            raise TypeError(f"WRONGTYPE key {key!r} is not a set")
        return set(entry.value)

    async def srem(self, key: str, *members: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            removed = len(entry.value & set(members))
            entry.value.difference_update(members)
            return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        logger.debug("Memory fast store cleared")
