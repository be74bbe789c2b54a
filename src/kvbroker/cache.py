"""
Cache facade: JSON-aware convenience operations over the StoreAdapter.

Structured values are serialized to JSON on write; reads attempt JSON decode
and fall back to the raw string. Nothing is cached locally: every call goes
to the bound backend. The facade is TTL-policy-free; callers pick a TTL
(see kvbroker.config.CacheTTL).
"""

from __future__ import annotations

import json
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from kvbroker.config import CacheTTL
from kvbroker.store.adapter import StoreAdapter
from kvbroker.store.base import BatchResult, StoreBatch

logger = structlog.get_logger(__name__)


def serialize(value: Any) -> str:
    """Strings pass through untouched; everything else is stored as JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, default=str)


def deserialize(raw: Optional[str], parse_json: bool = True) -> Any:
    if raw is None or not parse_json:
        return raw
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


class CacheFacade:
    """
    Typed cache API consumed by session, profile, discovery and temp-storage
    code.

    Example:
        await cache.set("user:42:profile", profile, ttl=CacheTTL.USER_PROFILE)
        profile = await cache.get("user:42:profile")
    """

    def __init__(self, store: StoreAdapter):
        self.store = store

    # --- strings ---

    async def set(self, key: str, value: Any, ttl: Optional[int] = CacheTTL.DEFAULT) -> bool:
        """
        Store a value; ttl=None (or 0) stores it without expiry.
        """
        serialized = serialize(value)
        if ttl:
            return await self.store.set_with_expiry(key, ttl, serialized)
        return await self.store.set(key, serialized)

    async def get(self, key: str, parse_json: bool = True) -> Any:
        return deserialize(await self.store.get(key), parse_json)

    async def delete(self, *keys: str) -> int:
        # Blank keys are dropped rather than sent to the store
        cleaned = [str(key) for key in keys if key is not None and str(key).strip()]
        if not cleaned:
            return 0
        return await self.store.delete(*cleaned)

    async def exists(self, key: str) -> bool:
        return await self.store.exists(key)

    async def ttl(self, key: str) -> int:
        return await self.store.ttl(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self.store.expire(key, ttl)

    async def persist(self, key: str) -> bool:
        return await self.store.persist(key)

    async def incr(self, key: str, ttl: Optional[int] = None) -> int:
        """Increment a counter; ttl applies only when the counter is created."""
        value = await self.store.incr(key)
        if ttl and value == 1:
            await self.store.expire(key, ttl)
        return value

    # --- hashes ---

    async def hset(self, key: str, field: str, value: Any, ttl: Optional[int] = None) -> bool:
        batch = self.store.multi().hset(key, field, serialize(value))
        if ttl:
            batch.expire(key, ttl)
        results = await self.store.exec(batch)
        return bool(results) and all(result.ok for result in results)

    async def hget(self, key: str, field: str, parse_json: bool = True) -> Any:
        return deserialize(await self.store.hget(key, field), parse_json)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self.store.hgetall(key)

    async def hdel(self, key: str, *fields: str) -> int:
        return await self.store.hdel(key, *fields)

    # --- sets ---

    async def sadd(self, key: str, *members: Any) -> int:
        return await self.store.sadd(key, *(str(member) for member in members))

    async def smembers(self, key: str) -> set[str]:
        return await self.store.smembers(key)

    async def srem(self, key: str, *members: Any) -> int:
        return await self.store.srem(key, *(str(member) for member in members))

    # --- lists ---

    async def lpush(self, key: str, *values: Any, limit: Optional[int] = None) -> int:
        """Push to the head; with limit, keep only the newest `limit` items."""
        batch = self.store.multi().lpush(key, *(serialize(value) for value in values))
        if limit:
            batch.ltrim(key, 0, limit - 1)
        results = await self.store.exec(batch)
        if not results or not results[0].ok:
            return 0
        return min(results[0].value, limit) if limit else results[0].value

    async def lrange(self, key: str, start: int = 0, stop: int = -1, parse_json: bool = True) -> list[Any]:
        return [deserialize(item, parse_json) for item in await self.store.lrange(key, start, stop)]

    async def llen(self, key: str) -> int:
        return await self.store.llen(key)

    # --- multi-key ---

    async def mset(self, values: dict[str, Any], ttl: Optional[int] = None) -> bool:
        if not values:
            return True
        batch = self.store.multi()
        for key, value in values.items():
            if ttl:
                batch.set_with_expiry(key, ttl, serialize(value))
            else:
                batch.set(key, serialize(value))
        results = await self.store.exec(batch)
        return all(result.ok for result in results)

    async def mget(self, keys: list[str], parse_json: bool = True) -> dict[str, Any]:
        """Return {key: value} for the keys that exist."""
        if not keys:
            return {}
        batch = self.store.multi()
        for key in keys:
            batch.get(key)
        results = await self.store.exec(batch)

        found: dict[str, Any] = {}
        for key, result in zip(keys, results):
            if result.ok and result.value is not None:
                found[key] = deserialize(result.value, parse_json)
        return found

    # --- keyspace ---

    async def scan(self, pattern: str = "*", count: int = 100) -> list[str]:
        return await self.store.scan(pattern, count)

    async def keys(self, pattern: str = "*") -> list[str]:
        return await self.store.keys(pattern)

    async def get_all_keys(self, pattern: str = "*", limit: int = 1000) -> list[str]:
        return await self.store.scan(pattern, limit)

    def pipeline(self) -> StoreBatch:
        """Start an atomic batch; apply it with `await cache.execute(batch)`."""
        return self.store.multi()

    async def execute(self, batch: StoreBatch) -> list[BatchResult]:
        return await self.store.exec(batch)

    async def flush_all(self) -> bool:
        flushed = await self.store.flushall()
        if flushed:
            logger.warning("All store data flushed", mode=self.store.mode)
        return flushed
