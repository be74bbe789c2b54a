"""
Unit tests for the redis.asyncio backend and connection pooling.
"""

import pytest
from unittest.mock import MagicMock, patch
from redis.exceptions import ResponseError

from kvbroker.config import Settings
from kvbroker.store.base import StoreBatch
from kvbroker.store.redis_backend import RedisBackend, create_connection_pool


@pytest.fixture
def backend(mock_async_redis):
    return RedisBackend(mock_async_redis)


def test_create_connection_pool_from_url():
    settings = Settings(REDIS_URL="redis://cache:6380/2", REDIS_MAX_CONNECTIONS=7, REDIS_CONNECT_TIMEOUT=3.0)

    with patch("kvbroker.store.redis_backend.ConnectionPool") as mock_pool:
        mock_pool.from_url.return_value = MagicMock()
        create_connection_pool(settings)

    mock_pool.from_url.assert_called_once_with(
        "redis://cache:6380/2",
        max_connections=7,
        decode_responses=True,
        socket_timeout=3.0,
        socket_connect_timeout=3.0,
    )


def test_create_connection_pool_from_host_settings():
    settings = Settings(
        REDIS_URL=None,
        REDIS_HOST="cache",
        REDIS_PORT=6390,
        REDIS_PASSWORD="",
        REDIS_DB=4,
        REDIS_MAX_CONNECTIONS=5,
        REDIS_CONNECT_TIMEOUT=2.0,
    )

    with patch("kvbroker.store.redis_backend.ConnectionPool") as mock_pool:
        create_connection_pool(settings)

    mock_pool.assert_called_once_with(
        host="cache",
        port=6390,
        password=None,  # Empty password is sent as no password
        db=4,
        max_connections=5,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
    )


@pytest.mark.asyncio
async def test_set_with_expiry_translates_to_setex(backend, mock_async_redis):
    assert await backend.set_with_expiry("k", 30, "v") is True

    mock_async_redis.setex.assert_awaited_once_with("k", 30, "v")


@pytest.mark.asyncio
async def test_zrange_by_score_translates_paging(backend, mock_async_redis):
    mock_async_redis.zrangebyscore.return_value = ["a", "b"]

    assert await backend.zrange_by_score("z", 0, 100, 0, 10) == ["a", "b"]

    mock_async_redis.zrangebyscore.assert_awaited_once_with("z", 0, 100, start=0, num=10)


@pytest.mark.asyncio
async def test_zpopmin_converts_scores(backend, mock_async_redis):
    mock_async_redis.zpopmin.return_value = [("job_1", "1700000000000")]

    assert await backend.zpopmin("queue:emails") == [("job_1", 1700000000000.0)]


@pytest.mark.asyncio
async def test_bzpopmin_unpacks_reply(backend, mock_async_redis):
    mock_async_redis.bzpopmin.return_value = ("queue:emails", "job_1", "42")

    assert await backend.bzpopmin("queue:emails", 1.0) == ("job_1", 42.0)
    mock_async_redis.bzpopmin.assert_awaited_once_with("queue:emails", timeout=1.0)


@pytest.mark.asyncio
async def test_bzpopmin_timeout_returns_none(backend):
    assert await backend.bzpopmin("queue:emails", 0.1) is None


@pytest.mark.asyncio
async def test_smembers_returns_set(backend, mock_async_redis):
    mock_async_redis.smembers.return_value = ["a", "b"]

    assert await backend.smembers("tags") == {"a", "b"}


@pytest.mark.asyncio
async def test_hexists_returns_bool(backend, mock_async_redis):
    mock_async_redis.hexists.return_value = 1

    assert await backend.hexists("queue:emails:jobs", "job_1") is True
    mock_async_redis.hexists.assert_awaited_once_with("queue:emails:jobs", "job_1")


@pytest.mark.asyncio
async def test_execute_batch_uses_transaction_and_reports_errors(backend, mock_async_redis):
    pipe = mock_async_redis.pipeline.return_value
    wrong_type = ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")
    pipe.execute.return_value = [True, wrong_type]
    batch = StoreBatch().set_with_expiry("a", 10, "1").hset("a", "f", "v")

    results = await backend.execute_batch(batch.commands)

    mock_async_redis.pipeline.assert_called_once_with(transaction=True)
    pipe.setex.assert_called_once_with("a", 10, "1")
    pipe.hset.assert_called_once_with("a", "f", "v")
    pipe.execute.assert_awaited_once_with(raise_on_error=False)
    assert results[0].ok and results[0].value is True
    assert results[1].error is wrong_type


@pytest.mark.asyncio
async def test_errors_propagate_to_the_caller(backend, mock_async_redis):
    mock_async_redis.get.side_effect = ConnectionError("Connection reset by peer")

    with pytest.raises(ConnectionError):
        await backend.get("k")
