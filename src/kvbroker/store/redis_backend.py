"""
Remote store backend over redis.asyncio with connection pooling.

One pooled client carries commands; a dedicated PubSub connection (created
lazily on first subscribe) carries channel messages.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub

from kvbroker.config import Settings
from kvbroker.store.base import (
    BatchCommand,
    BatchResult,
    MessageListener,
    StoreBackend,
)

logger = structlog.get_logger(__name__)


def create_connection_pool(settings: Settings) -> ConnectionPool:
    """
    Build the async connection pool from settings.

    REDIS_URL, when set, takes precedence over host/port/password/db.
    """
    options: dict[str, Any] = {
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
        "decode_responses": True,  # Auto-decode bytes to str
        "socket_timeout": settings.REDIS_CONNECT_TIMEOUT,
        "socket_connect_timeout": settings.REDIS_CONNECT_TIMEOUT,
    }
    if settings.REDIS_URL:
        return ConnectionPool.from_url(settings.REDIS_URL, **options)
    return ConnectionPool(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        password=settings.REDIS_PASSWORD or None,
        db=settings.REDIS_DB,
        **options,
    )


def _command(target: Any, op: str, args: tuple) -> Any:
    """
    Issue one operation against a client or a pipeline.

    On a client this returns an awaitable; on a pipeline it buffers the
    command. Operation names that differ from redis-py are translated here.
    """
    if op == "set_with_expiry":
        key, ttl, value = args
        return target.setex(key, ttl, value)
    if op == "zrange_by_score":
        key, min_score, max_score, offset, count = args
        return target.zrangebyscore(key, min_score, max_score, start=offset, num=count)
    if op == "zrem_range_by_score":
        return target.zremrangebyscore(*args)
    return getattr(target, op)(*args)


class RedisBackend(StoreBackend):
    """
    StoreBackend implementation for a Redis-compatible server.

    Args:
        client: redis.asyncio client (usually built on create_connection_pool)
        pool: Pool to disconnect on close, if owned by this backend
    """

    mode = "connected"

    def __init__(self, client: Redis, pool: Optional[ConnectionPool] = None):
        self._client = client
        self._pool = pool
        self._pubsub: Optional[PubSub] = None
        self._listeners: dict[str, MessageListener] = {}
        self._reader: Optional[asyncio.Task] = None

    @property
    def client(self) -> Redis:
        return self._client

    async def _call(self, op: str, *args: Any) -> Any:
        return await _command(self._client, op, args)

    # --- connection ---

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        self._listeners.clear()
        await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        logger.info("Closed Redis connections")

    # --- strings / keys ---

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def set(self, key: str, value: str) -> bool:
        return bool(await self._call("set", key, value))

    async def set_with_expiry(self, key: str, ttl: int, value: str) -> bool:
        return bool(await self._call("set_with_expiry", key, ttl, value))

    async def delete(self, *keys: str) -> int:
        return await self._call("delete", *keys)

    async def exists(self, key: str) -> int:
        return await self._call("exists", key)

    async def ttl(self, key: str) -> int:
        return await self._call("ttl", key)

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._call("expire", key, ttl))

    async def persist(self, key: str) -> bool:
        return bool(await self._call("persist", key))

    async def incr(self, key: str) -> int:
        return await self._call("incr", key)

    # --- hashes ---

    async def hset(self, key: str, field: str, value: str) -> int:
        return await self._call("hset", key, field, value)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._call("hget", key, field)

    async def hexists(self, key: str, field: str) -> bool:
        return bool(await self._call("hexists", key, field))

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._call("hgetall", key)

    async def hdel(self, key: str, *fields: str) -> int:
        return await self._call("hdel", key, *fields)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self._call("hincrby", key, field, amount)

    # --- sets ---

    async def sadd(self, key: str, *members: str) -> int:
        return await self._call("sadd", key, *members)

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("smembers", key))

    async def srem(self, key: str, *members: str) -> int:
        return await self._call("srem", key, *members)

    # --- lists ---

    async def lpush(self, key: str, *values: str) -> int:
        return await self._call("lpush", key, *values)

    async def rpush(self, key: str, *values: str) -> int:
        return await self._call("rpush", key, *values)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self._call("lrange", key, start, stop)

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return bool(await self._call("ltrim", key, start, stop))

    async def llen(self, key: str) -> int:
        return await self._call("llen", key)

    async def rpop(self, key: str) -> Optional[str]:
        return await self._call("rpop", key)

    # --- sorted sets ---

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        return await self._call("zadd", key, mapping)

    async def zrange_by_score(
        self,
        key: str,
        min_score: float,
        max_score: float,
        offset: Optional[int] = None,
        count: Optional[int] = None,
    ) -> list[str]:
        return await self._call("zrange_by_score", key, min_score, max_score, offset, count)

    async def zrem_range_by_score(self, key: str, min_score: float, max_score: float) -> int:
        return await self._call("zrem_range_by_score", key, min_score, max_score)

    async def zcount(self, key: str, min_score: float, max_score: float) -> int:
        return await self._call("zcount", key, min_score, max_score)

    async def zcard(self, key: str) -> int:
        return await self._call("zcard", key)

    async def zrem(self, key: str, *members: str) -> int:
        return await self._call("zrem", key, *members)

    async def zpopmin(self, key: str, count: int = 1) -> list[tuple[str, float]]:
        popped = await self._call("zpopmin", key, count)
        return [(member, float(score)) for member, score in popped]

    async def bzpopmin(self, key: str, timeout: float) -> Optional[tuple[str, float]]:
        result = await self._client.bzpopmin(key, timeout=timeout)
        if result is None:
            return None
        _, member, score = result
        return member, float(score)

    # --- keyspace ---

    async def keys(self, pattern: str = "*") -> list[str]:
        return await self._client.keys(pattern)

    async def scan(self, pattern: str = "*", count: int = 100) -> list[str]:
        found: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=count):
            found.append(key)
            if len(found) >= count:
                break
        return found

    async def dbsize(self) -> int:
        return await self._client.dbsize()

    async def flushall(self) -> bool:
        return bool(await self._client.flushall())

    # --- batch ---

    async def execute_batch(self, commands: list[BatchCommand]) -> list[BatchResult]:
        async with self._client.pipeline(transaction=True) as pipe:
            for command in commands:
                _command(pipe, command.op, command.args)
            raw_results = await pipe.execute(raise_on_error=False)
        return [
            BatchResult(value, None) if isinstance(value, Exception) else BatchResult(None, value)
            for value in raw_results
        ]

    # --- pub/sub transport ---

    async def publish(self, channel: str, message: str) -> int:
        return await self._client.publish(channel, message)

    async def subscribe(self, channel: str, listener: MessageListener) -> None:
        if self._pubsub is None:
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(channel)
        self._listeners[channel] = listener
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_messages())

    async def unsubscribe(self, channel: str) -> None:
        self._listeners.pop(channel, None)
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(channel)
        if not self._listeners and self._reader is not None:
            self._reader.cancel()
            self._reader = None

    async def _read_messages(self) -> None:
        """Forward channel messages to listeners until cancelled."""
        while self._pubsub is not None:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Pub/sub read failed", error=str(exc))
                await asyncio.sleep(1.0)
                continue

            if message is None or message.get("type") != "message":
                continue

            listener = self._listeners.get(message["channel"])
            if listener is not None:
                listener(message["channel"], message["data"])
