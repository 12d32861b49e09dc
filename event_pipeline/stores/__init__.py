"""
Fast store backends
"""
from event_pipeline.config.settings import Settings
from .base import FastStore, with_timeout
from .memory import MemoryFastStore
from .redis_store import RedisFastStore


async def create_fast_store(settings: Settings) -> FastStore:
    """Build the configured fast store backend"""
    if settings.fast_store.backend == "memory":
        return MemoryFastStore()
    return await RedisFastStore.connect(settings.redis)


__all__ = [
    "FastStore",
    "MemoryFastStore",
    "RedisFastStore",
    "create_fast_store",
    "with_timeout",
]
