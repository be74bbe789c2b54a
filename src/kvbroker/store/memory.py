"""
In-process emulation of the remote store (fallback mode).

Reproduces the remote store's observable semantics for the operation set in
StoreBackend:
- TTL decay: an expired entry is absent; it is evicted lazily on access and
  by sweep_expired() (run periodically by the supervisor)
- WRONGTYPE guards: operating on a key of another type raises WrongTypeError
- Empty collections are removed
- Pattern matching supports one trailing wildcard (anchored prefix match)

No coroutine here awaits between reading and writing state, so every
operation (and every batch) is atomic with respect to the event loop.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, TypeVar

import structlog

from kvbroker.exceptions import StoreError, WrongTypeError
from kvbroker.store.base import (
    BatchCommand,
    BatchResult,
    MessageListener,
    StoreBackend,
)
from kvbroker.store.values import (
    HashValue,
    ListValue,
    ScalarValue,
    SetValue,
    SortedSetValue,
    StoreEntry,
)

logger = structlog.get_logger(__name__)

V = TypeVar("V", ScalarValue, HashValue, SetValue, ListValue, SortedSetValue)


def match_pattern(key: str, pattern: str) -> bool:
    """Match a key against `*`, an exact key, or `prefix*`."""
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return key.startswith(pattern[:-1])
    return key == pattern


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise StoreError("ERR value is not an integer or out of range", {"value": raw})


def _normalize_range(start: int, stop: int, length: int) -> Optional[tuple[int, int]]:
    """Resolve inclusive list indices the way LRANGE/LTRIM do; None if empty."""
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    if stop >= length:
        stop = length - 1
    if start > stop or start >= length:
        return None
    return start, stop


class MemoryBackend(StoreBackend):
    """
    Dict-backed store emulation.

    Args:
        clock: Returns current epoch seconds (injectable for TTL tests)
    """

    mode = "fallback"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, StoreEntry] = {}
        self._listeners: dict[str, MessageListener] = {}
        self._waiters: dict[str, list[asyncio.Future]] = {}

    # --- internals ---

    def _lookup(self, key: str) -> Optional[StoreEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _typed(self, key: str, value_type: type[V]) -> Optional[V]:
        entry = self._lookup(key)
        if entry is None:
            return None
        if not isinstance(entry.value, value_type):
            raise WrongTypeError(key, value_type.kind, entry.value.kind)
        return entry.value

    def _typed_or_create(self, key: str, value_type: type[V]) -> V:
        value = self._typed(key, value_type)
        if value is None:
            value = value_type()
            self._entries[key] = StoreEntry(value)
        return value

    def _drop_if_empty(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.is_empty():
            del self._entries[key]

    def _wake(self, key: str) -> None:
        for waiter in self._waiters.pop(key, []):
            if not waiter.done():
                waiter.set_result(None)

    def size(self) -> int:
        """Number of live entries (expired entries excluded)."""
        now = self._clock()
        return sum(1 for entry in self._entries.values() if not entry.is_expired(now))

    def sweep_expired(self) -> int:
        """Evict every expired entry; returns the number evicted."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept expired fallback entries", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._listeners.clear()

    # --- connection ---

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.clear()

    # --- strings / keys ---

    async def get(self, key: str) -> Optional[str]:
        value = self._typed(key, ScalarValue)
        return value.data if value is not None else None

    async def set(self, key: str, value: str) -> bool:
        self._entries[key] = StoreEntry(ScalarValue(str(value)))
        return True

    async def set_with_expiry(self, key: str, ttl: int, value: str) -> bool:
        if ttl <= 0:
            raise StoreError("ERR invalid expire time in 'setex' command", {"ttl": ttl})
        self._entries[key] = StoreEntry(ScalarValue(str(value)), self._clock() + ttl)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._lookup(key) is not None:
                del self._entries[key]
                deleted += 1
        return deleted

    async def exists(self, key: str) -> int:
        return 1 if self._lookup(key) is not None else 0

    async def ttl(self, key: str) -> int:
        entry = self._lookup(key)
        if entry is None:
            return -2
        if entry.expires_at is None:
            return -1
        remaining_ms = (entry.expires_at - self._clock()) * 1000
        return int((remaining_ms + 500) // 1000)

    async def expire(self, key: str, ttl: int) -> bool:
        entry = self._lookup(key)
        if entry is None:
            return False
        if ttl <= 0:
            del self._entries[key]
            return True
        entry.expires_at = self._clock() + ttl
        return True

    async def persist(self, key: str) -> bool:
        entry = self._lookup(key)
        if entry is None or entry.expires_at is None:
            return False
        entry.expires_at = None
        return True

    async def incr(self, key: str) -> int:
        entry = self._lookup(key)
        if entry is None:
            self._entries[key] = StoreEntry(ScalarValue("1"))
            return 1
        if not isinstance(entry.value, ScalarValue):
            raise WrongTypeError(key, ScalarValue.kind, entry.value.kind)
        number = _parse_int(entry.value.data) + 1
        entry.value = ScalarValue(str(number))
        return number

    # --- hashes ---

    async def hset(self, key: str, field: str, value: str) -> int:
        hash_value = self._typed_or_create(key, HashValue)
        is_new = field not in hash_value.fields
        hash_value.fields[field] = str(value)
        return 1 if is_new else 0

    async def hget(self, key: str, field: str) -> Optional[str]:
        hash_value = self._typed(key, HashValue)
        return hash_value.fields.get(field) if hash_value is not None else None

    async def hexists(self, key: str, field: str) -> bool:
        hash_value = self._typed(key, HashValue)
        return hash_value is not None and field in hash_value.fields

    async def hgetall(self, key: str) -> dict[str, str]:
        hash_value = self._typed(key, HashValue)
        return dict(hash_value.fields) if hash_value is not None else {}

    async def hdel(self, key: str, *fields: str) -> int:
        hash_value = self._typed(key, HashValue)
        if hash_value is None:
            return 0
        removed = 0
        for field in fields:
            if hash_value.fields.pop(field, None) is not None:
                removed += 1
        self._drop_if_empty(key)
        return removed

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        hash_value = self._typed_or_create(key, HashValue)
        number = _parse_int(hash_value.fields.get(field, "0")) + amount
        hash_value.fields[field] = str(number)
        return number

    # --- sets ---

    async def sadd(self, key: str, *members: str) -> int:
        set_value = self._typed_or_create(key, SetValue)
        before = len(set_value.members)
        set_value.members.update(str(member) for member in members)
        return len(set_value.members) - before

    async def smembers(self, key: str) -> set[str]:
        set_value = self._typed(key, SetValue)
        return set(set_value.members) if set_value is not None else set()

    async def srem(self, key: str, *members: str) -> int:
        set_value = self._typed(key, SetValue)
        if set_value is None:
            return 0
        removed = 0
        for member in members:
            if str(member) in set_value.members:
                set_value.members.discard(str(member))
                removed += 1
        self._drop_if_empty(key)
        return removed

    # --- lists ---

    async def lpush(self, key: str, *values: str) -> int:
        list_value = self._typed_or_create(key, ListValue)
        for value in values:
            list_value.items.insert(0, str(value))
        return len(list_value.items)

    async def rpush(self, key: str, *values: str) -> int:
        list_value = self._typed_or_create(key, ListValue)
        list_value.items.extend(str(value) for value in values)
        return len(list_value.items)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        list_value = self._typed(key, ListValue)
        if list_value is None:
            return []
        bounds = _normalize_range(start, stop, len(list_value.items))
        if bounds is None:
            return []
        return list_value.items[bounds[0] : bounds[1] + 1]

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        list_value = self._typed(key, ListValue)
        if list_value is None:
            return True
        bounds = _normalize_range(start, stop, len(list_value.items))
        list_value.items = [] if bounds is None else list_value.items[bounds[0] : bounds[1] + 1]
        self._drop_if_empty(key)
        return True

    async def llen(self, key: str) -> int:
        list_value = self._typed(key, ListValue)
        return len(list_value.items) if list_value is not None else 0

    async def rpop(self, key: str) -> Optional[str]:
        list_value = self._typed(key, ListValue)
        if list_value is None or not list_value.items:
            return None
        item = list_value.items.pop()
        self._drop_if_empty(key)
        return item

    # --- sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self._typed_or_create(key, SortedSetValue)
        added = sum(1 for member in mapping if member not in zset.scores)
        for member, score in mapping.items():
            zset.scores[str(member)] = float(score)
        self._wake(key)
        return added

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        zset = self._typed(key, SortedSetValue)
        if zset is None:
            return []
        members = [
            member for member, score in zset.ordered() if min_score <= score <= max_score
        ]
        if offset is not None and count is not None:
            end = None if count < 0 else offset + count
            members = members[offset:end]
        return members

    async def zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._typed(key, SortedSetValue)
        if zset is None:
            return 0
        doomed = [m for m, score in zset.scores.items() if min_score <= score <= max_score]
        for member in doomed:
            del zset.scores[member]
        self._drop_if_empty(key)
        return len(doomed)

    async def zcount(self, key: str, min_score: float, max_score: float) -> int:
        zset = self._typed(key, SortedSetValue)
        if zset is None:
            return 0
        return sum(1 for score in zset.scores.values() if min_score <= score <= max_score)

    async def zcard(self, key: str) -> int:
        zset = self._typed(key, SortedSetValue)
        return len(zset.scores) if zset is not None else 0

    async def zrem(self, key: str, *members: str) -> int:
        zset = self._typed(key, SortedSetValue)
        if zset is None:
            return 0
        removed = 0
        for member in members:
            if zset.scores.pop(str(member), None) is not None:
                removed += 1
        self._drop_if_empty(key)
        return removed

    async def zpopmin(self, key: str, count: int = 1) -> list[tuple[str, float]]:
        zset = self._typed(key, SortedSetValue)
        if zset is None:
            return []
        popped = zset.ordered()[:count]
        for member, _ in popped:
            del zset.scores[member]
        self._drop_if_empty(key)
        return popped

    async def bzpopmin(self, key: str, timeout: float) -> Optional[tuple[str, float]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            popped = await self.zpopmin(key, 1)
            if popped:
                return popped[0]
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            waiter = loop.create_future()
            self._waiters.setdefault(key, []).append(waiter)
            try:
                await asyncio.wait({waiter}, timeout=remaining)
            finally:
                pending = self._waiters.get(key)
                if pending and waiter in pending:
                    pending.remove(waiter)
                waiter.cancel()

    # --- keyspace ---

    async def keys(self, pattern: str = "*") -> list[str]:
        now = self._clock()
        return [
            key
            for key, entry in list(self._entries.items())
            if not entry.is_expired(now) and match_pattern(key, pattern)
        ]

    async def scan(self, pattern: str = "*", count: int = 100) -> list[str]:
        return (await self.keys(pattern))[:count]

    async def dbsize(self) -> int:
        return self.size()

    async def flushall(self) -> bool:
        self._entries.clear()
        return True

    # --- batch ---

    async def execute_batch(self, commands: list[BatchCommand]) -> list[BatchResult]:
        results: list[BatchResult] = []
        for command in commands:
            try:
                value = await getattr(self, command.op)(*command.args)
                results.append(BatchResult(None, value))
            except Exception as exc:
                results.append(BatchResult(exc, None))
        return results

    # --- pub/sub transport ---

    async def publish(self, channel: str, message: str) -> int:
        listener = self._listeners.get(channel)
        if listener is None:
            return 0
        asyncio.get_running_loop().call_soon(listener, channel, message)
        return 1

    async def subscribe(self, channel: str, listener: MessageListener) -> None:
        self._listeners[channel] = listener

    async def unsubscribe(self, channel: str) -> None:
        self._listeners.pop(channel, None)
