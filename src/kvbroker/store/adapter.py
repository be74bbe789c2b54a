"""
Dual-mode store adapter.

Routes every operation to whichever backend the supervisor currently binds
(remote or fallback emulation) and applies the error policy: any failure is
logged, counted, and converted to a neutral default (None, 0, False, or an
empty collection). Callers cannot distinguish "empty" from "failed".
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import structlog

from kvbroker.exceptions import StoreUnavailableError
from kvbroker.monitoring.metrics import (
    StoreStats,
    cache_lookups_total,
    store_operations_total,
)
from kvbroker.store.base import (
    BatchResult,
    MessageListener,
    StoreBackend,
    StoreBatch,
)

logger = structlog.get_logger(__name__)


class BackendProvider(Protocol):
    """Anything exposing the currently bound backend (the ConnectionSupervisor)."""

    @property
    def backend(self) -> Optional[StoreBackend]: ...


def _fresh(default: Any) -> Any:
    """Never hand out a shared mutable default."""
    if isinstance(default, (list, dict, set)):
        return type(default)()
    return default


class StoreAdapter:
    """
    Uniform, failure-absorbing operation set over the bound backend.

    Attributes:
        stats: Cumulative hit/miss/set/delete/error counters
    """

    def __init__(self, provider: BackendProvider, stats: Optional[StoreStats] = None):
        self._provider = provider
        self.stats = stats or StoreStats()

    @property
    def available(self) -> bool:
        return self._provider.backend is not None

    @property
    def mode(self) -> str:
        backend = self._provider.backend
        return backend.mode if backend is not None else "disconnected"

    def _fail(self, op: str, default: Any, exc: Exception) -> Any:
        self.stats.errors += 1
        store_operations_total.labels(operation=op, outcome="error").inc()
        logger.warning(
            "Store operation failed",
            operation=op,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return _fresh(default)

    async def _run(self, op: str, default: Any, *args: Any) -> Any:
        backend = self._provider.backend
        if backend is None:
            return self._fail(op, default, StoreUnavailableError("No store backend bound"))
        try:
            result = await getattr(backend, op)(*args)
        except Exception as exc:
            return self._fail(op, default, exc)
        store_operations_total.labels(operation=op, outcome="ok").inc()
        return result

    # --- strings / keys ---

    async def ping(self) -> bool:
        return await self._run("ping", False)

    async def get(self, key: str) -> Optional[str]:
        value = await self._run("get", None, key)
        if value is None:
            self.stats.misses += 1
            cache_lookups_total.labels(result="miss").inc()
        else:
            self.stats.hits += 1
            cache_lookups_total.labels(result="hit").inc()
        return value

    async def set(self, key: str, value: str) -> bool:
        ok = await self._run("set", False, key, value)
        if ok:
            self.stats.sets += 1
        return ok

    async def set_with_expiry(self, key: str, ttl: int, value: str) -> bool:
        ok = await self._run("set_with_expiry", False, key, ttl, value)
        if ok:
            self.stats.sets += 1
        return ok

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        deleted = await self._run("delete", 0, *keys)
        self.stats.deletes += deleted
        return deleted

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", 0, key))

    async def ttl(self, key: str) -> int:
        return await self._run("ttl", -2, key)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self._run("expire", False, key, ttl)

    async def persist(self, key: str) -> bool:
        return await self._run("persist", False, key)

    async def incr(self, key: str) -> int:
        return await self._run("incr", 0, key)

    # --- hashes ---

    async def hset(self, key: str, field: str, value: str) -> int:
        return await self._run("hset", 0, key, field, value)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._run("hget", None, key, field)

    async def hexists(self, key: str, field: str) -> bool:
        return await self._run("hexists", False, key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._run("hgetall", {}, key)

    async def hdel(self, key: str, *fields: str) -> int:
        if not fields:
            return 0
        return await self._run("hdel", 0, key, *fields)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._run("hincrby", 0, key, field, amount)

    # --- sets ---

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("sadd", 0, key, *members)

    async def smembers(self, key: str) -> set[str]:
        return await self._run("smembers", set(), key)

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("srem", 0, key, *members)

    # --- lists ---

    async def lpush(self, key: str, *values: str) -> int:
        if not values:
            return 0
        return await self._run("lpush", 0, key, *values)

    async def rpush(self, key: str, *values: str) -> int:
        if not values:
            return 0
        return await self._run("rpush", 0, key, *values)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self._run("lrange", [], key, start, stop)

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return await self._run("ltrim", False, key, start, stop)

    async def llen(self, key: str) -> int:
        return await self._run("llen", 0, key)

    async def rpop(self, key: str) -> Optional[str]:
        return await self._run("rpop", None, key)

    # --- sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        if not mapping:
            return 0
        return await self._run("zadd", 0, key, mapping)

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        return await self._run("zrange_by_score", [], key, min_score, max_score, offset, count)

    async def zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        return await self._run("zrem_range_by_score", 0, key, min_score, max_score)

    async def zcount(self, key: str, min_score: float, max_score: float) -> int:
        return await self._run("zcount", 0, key, min_score, max_score)

    async def zcard(self, key: str) -> int:
        return await self._run("zcard", 0, key)

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._run("zrem", 0, key, *members)

    async def zpopmin(self, key: str, count: int = 1) -> list[tuple[str, float]]:
        return await self._run("zpopmin", [], key, count)

    async def bzpopmin(self, key: str, timeout: float) -> Optional[tuple[str, float]]:
        return await self._run("bzpopmin", None, key, timeout)

    # --- keyspace ---

    async def keys(self, pattern: str = "*") -> list[str]:
        return await self._run("keys", [], pattern)

    async def scan(self, pattern: str = "*", count: int = 100) -> list[str]:
        return await self._run("scan", [], pattern, count)

    async def dbsize(self) -> int:
        return await self._run("dbsize", 0)

    async def flushall(self) -> bool:
        return await self._run("flushall", False)

    # --- batch ---

    def multi(self) -> StoreBatch:
        return StoreBatch()

    async def exec(self, batch: StoreBatch) -> list[BatchResult]:
        """
        Apply a batch atomically.

        Failures are reported per sub-operation. If the whole batch cannot
        be submitted, every sub-operation carries that error.
        """
        if not batch.commands:
            return []

        backend = self._provider.backend
        try:
            if backend is None:
                raise StoreUnavailableError("No store backend bound")
            results = await backend.execute_batch(batch.commands)
        except Exception as exc:
            self._fail("exec", None, exc)
            return [BatchResult(exc, None) for _ in batch.commands]

        failed = 0
        for command, result in zip(batch.commands, results):
            if not result.ok:
                failed += 1
                continue
            if command.op in ("set", "set_with_expiry"):
                self.stats.sets += 1
            elif command.op == "delete":
                self.stats.deletes += int(result.value or 0)

        if failed:
            self.stats.errors += failed
            store_operations_total.labels(operation="exec", outcome="error").inc(failed)
            logger.warning(
                "Batch sub-operations failed",
                failed=failed,
                total=len(batch.commands),
            )
        else:
            store_operations_total.labels(operation="exec", outcome="ok").inc()
        return results

    # --- pub/sub transport ---

    async def publish(self, channel: str, message: str) -> int:
        return await self._run("publish", 0, channel, message)

    async def subscribe(self, channel: str, listener: MessageListener) -> bool:
        backend = self._provider.backend
        if backend is None:
            self._fail("subscribe", False, StoreUnavailableError("No store backend bound"))
            return False
        try:
            await backend.subscribe(channel, listener)
        except Exception as exc:
            return self._fail("subscribe", False, exc)
        return True

    async def unsubscribe(self, channel: str) -> bool:
        backend = self._provider.backend
        if backend is None:
            return False
        try:
            await backend.unsubscribe(channel)
        except Exception as exc:
            return self._fail("unsubscribe", False, exc)
        return True
