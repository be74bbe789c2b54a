"""
Abstract store backend.

Defines the operation set that both the remote backend (redis.asyncio) and
the in-process emulation implement. Backends RAISE on failure; error
absorption happens one layer up in StoreAdapter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, NamedTuple, Optional

# Listener invoked with (channel, raw_message) for each delivered pub/sub message
MessageListener = Callable[[str, str], None]

# Operations accepted inside an atomic batch
BATCH_OPERATIONS = frozenset(
    {
        "set",
        "set_with_expiry",
        "get",
        "delete",
        "expire",
        "incr",
        "hset",
        "hincrby",
        "hdel",
        "sadd",
        "srem",
        "lpush",
        "rpush",
        "ltrim",
        "zadd",
        "zrem",
    }
)


class BatchCommand(NamedTuple):
    op: str
    args: tuple


class BatchResult(NamedTuple):
    """Outcome of one sub-operation of a batch: exactly one of error/value is meaningful."""

    error: Optional[Exception]
    value: Any

    @property
    def ok(self) -> bool:
        return self.error is None


class StoreBatch:
    """
    Ordered list of commands applied atomically by StoreAdapter.exec().

    Methods are chainable:
        batch = store.multi().set("a", "1").incr("counter")
        results = await store.exec(batch)
    """

    def __init__(self) -> None:
        self.commands: list[BatchCommand] = []

    def __len__(self) -> int:
        return len(self.commands)

    def _add(self, op: str, *args: Any) -> "StoreBatch":
        if op not in BATCH_OPERATIONS:
            raise ValueError(f"Operation not supported in batch: {op}")
        self.commands.append(BatchCommand(op, args))
        return self

    def set(self, key: str, value: str) -> "StoreBatch":
        return self._add("set", key, value)

    def set_with_expiry(self, key: str, ttl: int, value: str) -> "StoreBatch":
        return self._add("set_with_expiry", key, ttl, value)

    def get(self, key: str) -> "StoreBatch":
        return self._add("get", key)

    def delete(self, *keys: str) -> "StoreBatch":
        return self._add("delete", *keys)

    def expire(self, key: str, ttl: int) -> "StoreBatch":
        return self._add("expire", key, ttl)

    def incr(self, key: str) -> "StoreBatch":
        return self._add("incr", key)

    def hset(self, key: str, field: str, value: str) -> "StoreBatch":
        return self._add("hset", key, field, value)

    def hincrby(self, key: str, field: str, amount: int = 1) -> "StoreBatch":
        return self._add("hincrby", key, field, amount)

    def hdel(self, key: str, *fields: str) -> "StoreBatch":
        return self._add("hdel", key, *fields)

    def sadd(self, key: str, *members: str) -> "StoreBatch":
        return self._add("sadd", key, *members)

    def srem(self, key: str, *members: str) -> "StoreBatch":
        return self._add("srem", key, *members)

    def lpush(self, key: str, *values: str) -> "StoreBatch":
        return self._add("lpush", key, *values)

    def rpush(self, key: str, *values: str) -> "StoreBatch":
        return self._add("rpush", key, *values)

    def ltrim(self, key: str, start: int, stop: int) -> "StoreBatch":
        return self._add("ltrim", key, start, stop)

    def zadd(self, key: str, mapping: dict[str, float]) -> "StoreBatch":
        return self._add("zadd", key, mapping)

    def zrem(self, key: str, *members: str) -> "StoreBatch":
        return self._add("zrem", key, *members)


class StoreBackend(ABC):
    """
    Abstract base class for store backends.

    Concrete implementations:
    - RedisBackend: remote Redis-compatible store via redis.asyncio
    - MemoryBackend: in-process emulation used in fallback mode

    Both must produce identical observable results for the same operation
    sequence (TTL decay, WRONGTYPE guards, set semantics, ordering).
    """

    mode: str = "unknown"

    # --- connection ---

    @abstractmethod
    async def ping(self) -> bool: ...

    @abstractmethod
    async def close(self) -> None: ...

    # --- strings / keys ---

    @abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def set(self, key: str, value: str) -> bool: ...

    @abstractmethod
    async def set_with_expiry(self, key: str, ttl: int, value: str) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def exists(self, key: str) -> int: ...

    @abstractmethod
    async def ttl(self, key: str) -> int: ...

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool: ...

    @abstractmethod
    async def persist(self, key: str) -> bool: ...

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    # --- hashes ---

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> int: ...

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]: ...

    @abstractmethod
    async def hexists(self, key: str, field: str) -> bool: ...

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]: ...

    @abstractmethod
    async def hdel(self, key: str, *fields: str) -> int: ...

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    # --- sets ---

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def smembers(self, key: str) -> set[str]: ...

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int: ...

    # --- lists ---

    @abstractmethod
    async def lpush(self, key: str, *values: str) -> int: ...

    @abstractmethod
    async def rpush(self, key: str, *values: str) -> int: ...

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> list[str]: ...

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> bool: ...

    @abstractmethod
    async def llen(self, key: str) -> int: ...

    @abstractmethod
    async def rpop(self, key: str) -> Optional[str]: ...

    # --- sorted sets ---

    @abstractmethod
    async def zadd(self, key: str, mapping: dict[str, float]) -> int: ...

    @abstractmethod
    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]: ...

    @abstractmethod
    async def zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int: ...

    @abstractmethod
    async def zcount(self, key: str, min_score: float, max_score: float) -> int: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    async def zpopmin(self, key: str, count: int = 1) -> list[tuple[str, float]]: ...

    @abstractmethod
    async def bzpopmin(self, key: str, timeout: float) -> Optional[tuple[str, float]]:
        """Block up to `timeout` seconds for the lowest-scored member."""
        ...

    # --- keyspace ---

    @abstractmethod
    async def keys(self, pattern: str = "*") -> list[str]: ...

    @abstractmethod
    async def scan(self, pattern: str = "*", count: int = 100) -> list[str]: ...

    @abstractmethod
    async def dbsize(self) -> int: ...

    @abstractmethod
    async def flushall(self) -> bool: ...

    # --- batch ---

    @abstractmethod
    async def execute_batch(self, commands: list[BatchCommand]) -> list[BatchResult]:
        """Apply commands in order, atomically; report failures per command."""
        ...

    # --- pub/sub transport ---

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish a raw message; returns the number of receiving subscriptions."""
        ...

    @abstractmethod
    async def subscribe(self, channel: str, listener: MessageListener) -> None: ...

    @abstractmethod
    async def unsubscribe(self, channel: str) -> None: ...
