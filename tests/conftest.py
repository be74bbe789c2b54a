"""Shared test fixtures and configuration for all tests.

This conftest.py provides common fixtures used across unit and integration tests.
"""

import asyncio
import time
from types import SimpleNamespace

import pytest

from kvbroker.broker.engine import Broker
from kvbroker.broker.pubsub import PubSub
from kvbroker.cache import CacheFacade
from kvbroker.config import Settings
from kvbroker.store.adapter import StoreAdapter
from kvbroker.store.memory import MemoryBackend


class FakeClock:
    """Manually advanced epoch clock for TTL and scheduling tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with short timings so worker loops turn over quickly.

    Override specific settings in individual tests as needed:
        def test_something(test_settings):
            test_settings.QUEUE_POLL_INTERVAL = 0.5
    """
    return Settings(
        # === Application ===
        APP_NAME="kvbroker-test",
        APP_VERSION="0.1.0",
        LOG_LEVEL="DEBUG",
        ENVIRONMENT="development",

        # === Remote store ===
        REDIS_URL="redis://localhost:6379/15",
        REDIS_MAX_CONNECTIONS=10,

        # === Connection supervision ===
        REDIS_CONNECT_TIMEOUT=0.5,
        REDIS_CONNECT_DEADLINE=2.0,
        REDIS_MAX_CONNECT_RETRIES=0,
        REDIS_RETRY_DELAY_SECONDS=0.01,
        REDIS_RETRY_DELAY_MAX_SECONDS=0.05,
        HEALTH_PROBE_INTERVAL=60.0,
        FALLBACK_SWEEP_INTERVAL=60.0,

        # === Queues ===
        QUEUE_POLL_INTERVAL=0.05,
        QUEUE_CAPACITY_WAIT=0.01,
        QUEUE_ERROR_BACKOFF=0.05,
        QUEUE_REAPER_INTERVAL=60.0,
        QUEUE_SHUTDOWN_GRACE=0.5,
        JOB_RETRY_BASE_SECONDS=0.01,
        JOB_RETRY_MAX_SECONDS=0.1,

        # === Temp storage ===
        TEMP_CLEANUP_INTERVAL=60.0,

        PROMETHEUS_ENABLED=False,  # Disable metrics in tests unless explicitly needed
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(clock: FakeClock) -> MemoryBackend:
    """Emulated store driven by the fake clock."""
    return MemoryBackend(clock=clock)


@pytest.fixture
def provider(memory_backend: MemoryBackend) -> SimpleNamespace:
    """Stand-in for the supervisor: anything with a `backend` attribute.

    Swap the backend mid-test to simulate an outage:
        provider.backend = failing_backend
    """
    return SimpleNamespace(backend=memory_backend)


@pytest.fixture
def store(provider: SimpleNamespace) -> StoreAdapter:
    return StoreAdapter(provider)


@pytest.fixture
def cache(store: StoreAdapter) -> CacheFacade:
    return CacheFacade(store)


@pytest.fixture
def realtime_store() -> StoreAdapter:
    """Store over an emulation on the wall clock, for worker-loop tests."""
    return StoreAdapter(SimpleNamespace(backend=MemoryBackend()))


@pytest.fixture
def pubsub(realtime_store: StoreAdapter) -> PubSub:
    return PubSub(realtime_store, publisher="kvbroker-test")


@pytest.fixture
async def broker(realtime_store: StoreAdapter, pubsub: PubSub, test_settings: Settings):
    """Broker over the wall-clock emulation; shut down after the test."""
    instance = Broker(realtime_store, pubsub, test_settings)
    yield instance
    await instance.shutdown()


@pytest.fixture
def wait_until():
    """Poll a condition until it holds or a timeout elapses.

    Usage:
        async def test_something(wait_until):
            await wait_until(lambda: len(seen) == 3)
    """

    async def _wait(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if time.monotonic() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait
