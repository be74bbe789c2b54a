"""Unit test fixtures (mocks and stubs).

Provides mock backends for testing without a running Redis.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from kvbroker.store.redis_backend import RedisBackend


def make_remote_backend(ping_ok: bool = True) -> AsyncMock:
    """AsyncMock shaped like RedisBackend; ping succeeds or raises ConnectionError."""
    backend = AsyncMock(spec=RedisBackend)
    backend.mode = "connected"
    if ping_ok:
        backend.ping.return_value = True
    else:
        backend.ping.side_effect = ConnectionError("Connection refused")
    return backend


@pytest.fixture
def make_remote():
    """Factory fixture for remote backend mocks.

    Usage:
        def test_something(make_remote):
            backend = make_remote(ping_ok=False)
    """
    return make_remote_backend


@pytest.fixture
def remote_backend() -> AsyncMock:
    """Reachable remote backend mock."""
    return make_remote_backend()


@pytest.fixture
def failing_backend() -> AsyncMock:
    """Remote backend mock whose every call raises ConnectionError."""
    backend = AsyncMock(spec=RedisBackend)
    backend.mode = "connected"
    for name in dir(RedisBackend):
        if name.startswith("_") or name in ("mode", "client"):
            continue
        attribute = getattr(backend, name)
        if isinstance(attribute, AsyncMock):
            attribute.side_effect = ConnectionError("Connection reset by peer")
    return backend


@pytest.fixture
def mock_async_redis():
    """Mock redis.asyncio client for backend translation tests."""
    mock = AsyncMock()
    mock.get = AsyncMock(return_value=None)
    mock.set = AsyncMock(return_value=True)
    mock.setex = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    mock.zrangebyscore = AsyncMock(return_value=[])
    mock.zremrangebyscore = AsyncMock(return_value=0)
    mock.zpopmin = AsyncMock(return_value=[])
    mock.bzpopmin = AsyncMock(return_value=None)
    mock.smembers = AsyncMock(return_value=set())
    mock.publish = AsyncMock(return_value=0)

    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.__aexit__.return_value = False
    pipe.execute = AsyncMock(return_value=[])
    mock.pipeline = MagicMock(return_value=pipe)
    return mock
