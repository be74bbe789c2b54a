"""
Unit tests for StoreAdapter error absorption and stats.
"""

from types import SimpleNamespace
from typing import get_type_hints

import pytest

from kvbroker.cache import CacheFacade
from kvbroker.exceptions import StoreUnavailableError
from kvbroker.store.adapter import StoreAdapter
from kvbroker.store.base import StoreBackend
from kvbroker.store.memory import MemoryBackend
from kvbroker.store.redis_backend import RedisBackend


@pytest.fixture
def failing_store(failing_backend):
    return StoreAdapter(SimpleNamespace(backend=failing_backend))


@pytest.fixture
def unbound_store():
    return StoreAdapter(SimpleNamespace(backend=None))


@pytest.mark.asyncio
async def test_failures_return_neutral_defaults(failing_store):
    assert await failing_store.get("k") is None
    assert await failing_store.set("k", "v") is False
    assert await failing_store.delete("k") == 0
    assert await failing_store.exists("k") is False
    assert await failing_store.ttl("k") == -2
    assert await failing_store.incr("k") == 0
    assert await failing_store.hgetall("k") == {}
    assert await failing_store.smembers("k") == set()
    assert await failing_store.lrange("k", 0, -1) == []
    assert await failing_store.zpopmin("k") == []
    assert await failing_store.bzpopmin("k", 0.1) is None
    assert await failing_store.keys() == []
    assert await failing_store.ping() is False

    assert failing_store.stats.errors == 13


@pytest.mark.asyncio
async def test_defaults_are_fresh_per_call(failing_store):
    first = await failing_store.hgetall("k")
    first["polluted"] = "yes"

    assert await failing_store.hgetall("k") == {}


@pytest.mark.asyncio
async def test_unbound_backend_is_absorbed(unbound_store):
    assert unbound_store.available is False
    assert unbound_store.mode == "disconnected"
    assert await unbound_store.get("k") is None
    assert unbound_store.stats.errors == 1


@pytest.mark.asyncio
async def test_hits_misses_sets_and_deletes_are_counted(store):
    await store.set("a", "1")
    await store.set_with_expiry("b", 10, "2")
    await store.get("a")
    await store.get("missing")
    await store.delete("a", "b", "missing")

    assert store.stats.snapshot() == {
        "hits": 1,
        "misses": 1,
        "sets": 2,
        "deletes": 2,
        "errors": 0,
    }


@pytest.mark.asyncio
async def test_empty_argument_lists_skip_the_backend(failing_store):
    assert await failing_store.delete() == 0
    assert await failing_store.sadd("k") == 0
    assert await failing_store.zadd("k", {}) == 0
    assert failing_store.stats.errors == 0


@pytest.mark.asyncio
async def test_exec_reports_partial_failure(store):
    batch = store.multi().set("a", "1").hset("a", "f", "v").delete("a")

    results = await store.exec(batch)

    assert [result.ok for result in results] == [True, False, True]
    assert store.stats.sets == 1
    assert store.stats.deletes == 1
    assert store.stats.errors == 1


@pytest.mark.asyncio
async def test_exec_total_failure_marks_every_operation(failing_store):
    batch = failing_store.multi().set("a", "1").incr("b")

    results = await failing_store.exec(batch)

    assert len(results) == 2
    assert all(isinstance(result.error, ConnectionError) for result in results)


@pytest.mark.asyncio
async def test_exec_without_backend(unbound_store):
    results = await unbound_store.exec(unbound_store.multi().set("a", "1"))

    assert isinstance(results[0].error, StoreUnavailableError)


@pytest.mark.asyncio
async def test_exec_empty_batch(store):
    assert await store.exec(store.multi()) == []


@pytest.mark.asyncio
async def test_follows_provider_backend_swaps(store, provider, failing_backend, memory_backend):
    await store.set("k", "v")
    provider.backend = failing_backend
    assert await store.get("k") is None

    provider.backend = memory_backend
    assert await store.get("k") == "v"


@pytest.mark.asyncio
async def test_subscribe_failure_returns_false(failing_store, unbound_store):
    assert await failing_store.subscribe("news", lambda channel, message: None) is False
    assert await unbound_store.subscribe("news", lambda channel, message: None) is False
    assert await unbound_store.unsubscribe("news") is False


@pytest.mark.asyncio
async def test_hexists_failure_reads_as_absent(failing_store):
    assert await failing_store.hexists("queue:emails:jobs", "job_1") is False


@pytest.mark.parametrize("owner", [StoreBackend, MemoryBackend, RedisBackend, StoreAdapter, CacheFacade])
def test_set_annotations_resolve_despite_set_method(owner):
    # Each class defines a `set` method before annotating with set[str]
    assert get_type_hints(owner.smembers)["return"] == set[str]
