"""
Unit tests for the in-process store emulation.
"""

import asyncio

import pytest

from kvbroker.exceptions import StoreError, WrongTypeError
from kvbroker.store.base import StoreBatch
from kvbroker.store.memory import match_pattern


# ============================================================================
# TTL decay
# ============================================================================


@pytest.mark.asyncio
async def test_value_expires_after_ttl(memory_backend, clock):
    await memory_backend.set_with_expiry("greeting", 1, "hello")

    clock.advance(0.5)
    assert await memory_backend.get("greeting") == "hello"
    assert await memory_backend.ttl("greeting") == 1

    clock.advance(0.6)
    assert await memory_backend.get("greeting") is None
    assert await memory_backend.ttl("greeting") == -2
    assert memory_backend.size() == 0


@pytest.mark.asyncio
async def test_ttl_decreases_with_time(memory_backend, clock):
    await memory_backend.set_with_expiry("k", 10, "v")
    assert await memory_backend.ttl("k") == 10

    clock.advance(3)
    assert await memory_backend.ttl("k") == 7


@pytest.mark.asyncio
async def test_ttl_reports_missing_and_persistent_keys(memory_backend):
    await memory_backend.set("forever", "1")

    assert await memory_backend.ttl("forever") == -1
    assert await memory_backend.ttl("nope") == -2


@pytest.mark.asyncio
async def test_set_with_expiry_rejects_non_positive_ttl(memory_backend):
    with pytest.raises(StoreError):
        await memory_backend.set_with_expiry("k", 0, "v")


@pytest.mark.asyncio
async def test_expire_and_persist(memory_backend, clock):
    await memory_backend.set("k", "v")

    assert await memory_backend.expire("k", 5) is True
    assert await memory_backend.ttl("k") == 5
    assert await memory_backend.persist("k") is True
    assert await memory_backend.ttl("k") == -1

    # Already persistent
    assert await memory_backend.persist("k") is False

    clock.advance(100)
    assert await memory_backend.get("k") == "v"


@pytest.mark.asyncio
async def test_expire_with_non_positive_ttl_deletes(memory_backend):
    await memory_backend.set("k", "v")

    assert await memory_backend.expire("k", 0) is True
    assert await memory_backend.exists("k") == 0
    assert await memory_backend.expire("missing", 10) is False


@pytest.mark.asyncio
async def test_set_replaces_expiry(memory_backend, clock):
    await memory_backend.set_with_expiry("k", 5, "v1")
    await memory_backend.set("k", "v2")

    clock.advance(10)
    assert await memory_backend.get("k") == "v2"


@pytest.mark.asyncio
async def test_sweep_expired_evicts_only_expired(memory_backend, clock):
    await memory_backend.set_with_expiry("short", 1, "x")
    await memory_backend.set("long", "y")
    clock.advance(2)

    assert memory_backend.sweep_expired() == 1
    assert memory_backend.size() == 1


# ============================================================================
# Counters and type guards
# ============================================================================


@pytest.mark.asyncio
async def test_incr_creates_and_increments(memory_backend):
    assert await memory_backend.incr("hits") == 1
    assert await memory_backend.incr("hits") == 2
    assert await memory_backend.get("hits") == "2"


@pytest.mark.asyncio
async def test_incr_preserves_ttl(memory_backend):
    await memory_backend.set_with_expiry("counter", 30, "5")

    assert await memory_backend.incr("counter") == 6
    assert await memory_backend.ttl("counter") == 30


@pytest.mark.asyncio
async def test_incr_rejects_non_integer(memory_backend):
    await memory_backend.set("name", "alice")

    with pytest.raises(StoreError, match="not an integer"):
        await memory_backend.incr("name")


@pytest.mark.asyncio
async def test_wrong_type_operations_raise(memory_backend):
    await memory_backend.hset("profile", "name", "alice")

    with pytest.raises(WrongTypeError):
        await memory_backend.get("profile")
    with pytest.raises(WrongTypeError):
        await memory_backend.incr("profile")
    with pytest.raises(WrongTypeError):
        await memory_backend.lpush("profile", "x")

    await memory_backend.set("plain", "1")
    with pytest.raises(WrongTypeError):
        await memory_backend.hget("plain", "field")


# ============================================================================
# Hashes and sets
# ============================================================================


@pytest.mark.asyncio
async def test_hash_operations(memory_backend):
    assert await memory_backend.hset("h", "a", "1") == 1
    assert await memory_backend.hset("h", "a", "2") == 0
    assert await memory_backend.hset("h", "b", "3") == 1

    assert await memory_backend.hget("h", "a") == "2"
    assert await memory_backend.hexists("h", "a") is True
    assert await memory_backend.hexists("h", "missing") is False
    assert await memory_backend.hexists("no-such-hash", "a") is False
    assert await memory_backend.hgetall("h") == {"a": "2", "b": "3"}
    assert await memory_backend.hincrby("h", "b", 4) == 7
    assert await memory_backend.hincrby("h", "new", 0) == 0


@pytest.mark.asyncio
async def test_hdel_removes_empty_hash(memory_backend):
    await memory_backend.hset("h", "a", "1")

    assert await memory_backend.hdel("h", "a", "missing") == 1
    assert await memory_backend.exists("h") == 0
    assert await memory_backend.hgetall("h") == {}


@pytest.mark.asyncio
async def test_set_operations(memory_backend):
    assert await memory_backend.sadd("tags", "a", "b", "a") == 2
    assert await memory_backend.sadd("tags", "b", "c") == 1
    assert await memory_backend.smembers("tags") == {"a", "b", "c"}

    assert await memory_backend.srem("tags", "a", "b", "c") == 3
    assert await memory_backend.exists("tags") == 0


# ============================================================================
# Lists
# ============================================================================


@pytest.mark.asyncio
async def test_lpush_prepends_in_argument_order(memory_backend):
    assert await memory_backend.lpush("l", "a", "b", "c") == 3
    assert await memory_backend.lrange("l", 0, -1) == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_list_range_trim_and_pop(memory_backend):
    await memory_backend.rpush("l", "1", "2", "3", "4", "5")

    assert await memory_backend.lrange("l", 1, 2) == ["2", "3"]
    assert await memory_backend.lrange("l", -2, -1) == ["4", "5"]
    assert await memory_backend.lrange("l", 10, 20) == []

    await memory_backend.ltrim("l", 0, 2)
    assert await memory_backend.llen("l") == 3
    assert await memory_backend.rpop("l") == "3"

    await memory_backend.ltrim("l", 5, 10)
    assert await memory_backend.exists("l") == 0
    assert await memory_backend.rpop("l") is None


# ============================================================================
# Sorted sets
# ============================================================================


@pytest.mark.asyncio
async def test_zset_orders_by_score_then_member(memory_backend):
    await memory_backend.zadd("z", {"b": 1.0, "a": 1.0, "c": 0.5})

    assert await memory_backend.zrange_by_score("z", float("-inf"), float("inf")) == ["c", "a", "b"]
    assert await memory_backend.zrange_by_score("z", 0, 10, 1, 1) == ["a"]
    assert await memory_backend.zcount("z", 1, 1) == 2
    assert await memory_backend.zcard("z") == 3


@pytest.mark.asyncio
async def test_zadd_updates_score_without_counting(memory_backend):
    assert await memory_backend.zadd("z", {"a": 1}) == 1
    assert await memory_backend.zadd("z", {"a": 5}) == 0
    assert await memory_backend.zpopmin("z") == [("a", 5.0)]
    assert await memory_backend.exists("z") == 0


@pytest.mark.asyncio
async def test_zrem_range_by_score(memory_backend):
    await memory_backend.zadd("z", {"a": 1, "b": 2, "c": 3})

    assert await memory_backend.zrem_range_by_score("z", 1, 2) == 2
    assert await memory_backend.zrange_by_score("z", 0, 10) == ["c"]
    assert await memory_backend.zrem("z", "c", "missing") == 1


@pytest.mark.asyncio
async def test_bzpopmin_returns_immediately_when_available(memory_backend):
    await memory_backend.zadd("z", {"a": 2, "b": 1})

    assert await memory_backend.bzpopmin("z", 1.0) == ("b", 1.0)


@pytest.mark.asyncio
async def test_bzpopmin_times_out(memory_backend):
    assert await memory_backend.bzpopmin("z", 0.05) is None


@pytest.mark.asyncio
async def test_bzpopmin_wakes_on_zadd(memory_backend):
    waiter = asyncio.create_task(memory_backend.bzpopmin("z", 2.0))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await memory_backend.zadd("z", {"job": 42})

    assert await asyncio.wait_for(waiter, timeout=1.0) == ("job", 42.0)


# ============================================================================
# Keyspace
# ============================================================================


def test_match_pattern():
    assert match_pattern("anything", "*")
    assert match_pattern("user:1", "user:*")
    assert not match_pattern("session:1", "user:*")
    assert match_pattern("exact", "exact")
    assert not match_pattern("exact2", "exact")


@pytest.mark.asyncio
async def test_keys_excludes_expired(memory_backend, clock):
    await memory_backend.set("user:1", "a")
    await memory_backend.set_with_expiry("user:2", 1, "b")
    await memory_backend.set("other", "c")

    assert sorted(await memory_backend.keys("user:*")) == ["user:1", "user:2"]

    clock.advance(2)
    assert await memory_backend.keys("user:*") == ["user:1"]
    assert await memory_backend.dbsize() == 2


@pytest.mark.asyncio
async def test_scan_limits_count(memory_backend):
    for i in range(5):
        await memory_backend.set(f"k:{i}", str(i))

    assert len(await memory_backend.scan("k:*", 3)) == 3


@pytest.mark.asyncio
async def test_flushall(memory_backend):
    await memory_backend.set("a", "1")
    await memory_backend.sadd("b", "x")

    assert await memory_backend.flushall() is True
    assert await memory_backend.dbsize() == 0


# ============================================================================
# Batches and pub/sub transport
# ============================================================================


@pytest.mark.asyncio
async def test_batch_reports_errors_per_operation(memory_backend):
    batch = StoreBatch().set("a", "1").hset("a", "f", "v").incr("counter")

    results = await memory_backend.execute_batch(batch.commands)

    assert [result.ok for result in results] == [True, False, True]
    assert isinstance(results[1].error, WrongTypeError)
    assert results[2].value == 1
    # Sub-operations after a failure still apply
    assert await memory_backend.get("counter") == "1"


def test_batch_rejects_unsupported_operation():
    with pytest.raises(ValueError):
        StoreBatch()._add("flushall")


@pytest.mark.asyncio
async def test_publish_without_listener_is_not_delivered(memory_backend):
    assert await memory_backend.publish("news", "hello") == 0


@pytest.mark.asyncio
async def test_publish_delivers_to_listener(memory_backend):
    received = []
    await memory_backend.subscribe("news", lambda channel, message: received.append((channel, message)))

    assert await memory_backend.publish("news", "hello") == 1
    await asyncio.sleep(0)
    assert received == [("news", "hello")]

    await memory_backend.unsubscribe("news")
    assert await memory_backend.publish("news", "again") == 0


@pytest.mark.asyncio
async def test_close_clears_everything(memory_backend):
    await memory_backend.set("a", "1")
    await memory_backend.subscribe("news", lambda channel, message: None)

    await memory_backend.close()

    assert memory_backend.size() == 0
    assert await memory_backend.publish("news", "x") == 0
