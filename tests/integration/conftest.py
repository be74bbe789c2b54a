"""Integration test fixtures (service checks and prerequisites).

Provides fixtures for checking if external services are available.
Integration tests are skipped if required services are not running.
"""

import pytest
from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from kvbroker.store.memory import MemoryBackend
from kvbroker.store.redis_backend import RedisBackend

REDIS_TEST_URL = "redis://localhost:6379/15"  # Test database


@pytest.fixture(scope="session")
def check_redis():
    """Check if Redis is available at localhost:6379.

    Skips tests if Redis is not reachable.
    """
    try:
        client = Redis.from_url(REDIS_TEST_URL)
        client.ping()
        client.close()
    except Exception as e:
        pytest.skip(f"Redis not available: {e}")


@pytest.fixture
async def redis_backend(check_redis):
    """RedisBackend on database 15, flushed before and after each test."""
    client = AsyncRedis.from_url(REDIS_TEST_URL, decode_responses=True)
    await client.flushdb()

    backend = RedisBackend(client)
    yield backend

    await client.flushdb()
    await backend.close()


@pytest.fixture(params=["memory", "redis"])
def any_backend(request):
    """Run a test once against the emulation and once against Redis."""
    if request.param == "memory":
        return MemoryBackend()
    return request.getfixturevalue("redis_backend")


@pytest.fixture
def integration_settings(test_settings):
    """Settings for integration tests with real services.

    Points to localhost services on standard ports.
    """
    test_settings.REDIS_URL = REDIS_TEST_URL
    test_settings.PROMETHEUS_ENABLED = False

    return test_settings
