"""Store layer: backend interface, remote and in-process backends, adapter."""

from kvbroker.store.adapter import StoreAdapter
from kvbroker.store.base import BatchResult, StoreBackend, StoreBatch
from kvbroker.store.memory import MemoryBackend
from kvbroker.store.redis_backend import RedisBackend, create_connection_pool

__all__ = [
    "BatchResult",
    "MemoryBackend",
    "RedisBackend",
    "StoreAdapter",
    "StoreBackend",
    "StoreBatch",
    "create_connection_pool",
]
