"""
Connection supervisor.

Owns the remote connection and the fallback emulation, and is the only
component allowed to change connection state:

    disconnected --initialize--> connecting --ok--> connected
                                            --exhausted/deadline--> fallback
    connected --probe fails--> disconnected --probe ok--> connected
    any --shutdown--> disconnected

Fallback is sticky: it is left only through shutdown() or reinitialize().
"""

import asyncio
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from redis.asyncio import Redis

from kvbroker.config import Settings
from kvbroker.exceptions import StoreUnavailableError
from kvbroker.monitoring.metrics import set_connection_mode
from kvbroker.store.base import StoreBackend
from kvbroker.store.memory import MemoryBackend
from kvbroker.store.redis_backend import RedisBackend, create_connection_pool

logger = structlog.get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FALLBACK = "fallback"


class LifecycleEvent(str, Enum):
    CONNECTED = "connected"
    FALLBACK = "fallback"
    HEALTH_FAILED = "health-failed"
    SHUTDOWN = "shutdown"


# Observer called with (event, details); may be a plain function or a coroutine function
LifecycleListener = Callable[[LifecycleEvent, dict[str, Any]], Any]

BackendFactory = Callable[[Settings], StoreBackend]


def create_redis_backend(settings: Settings) -> RedisBackend:
    """Default factory: pooled redis.asyncio client wrapped in a RedisBackend."""
    pool = create_connection_pool(settings)
    return RedisBackend(Redis(connection_pool=pool), pool=pool)


class ConnectionSupervisor:
    """
    Supervises the remote store connection with bounded retry and fallback.

    Args:
        settings: Connection, retry and probe settings
        backend_factory: Builds a fresh remote backend per connect attempt
        memory: Fallback emulation (a new MemoryBackend by default)
    """

    def __init__(
        self,
        settings: Settings,
        backend_factory: Optional[BackendFactory] = None,
        memory: Optional[MemoryBackend] = None,
    ):
        self.settings = settings
        self._backend_factory = backend_factory or create_redis_backend
        self._memory = memory or MemoryBackend()
        self._remote: Optional[StoreBackend] = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: dict[LifecycleEvent, list[LifecycleListener]] = defaultdict(list)
        self._probe_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.connect_attempts = 0
        self.last_error: Optional[str] = None
        set_connection_mode(self._state.value)

    # --- state ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def memory(self) -> MemoryBackend:
        return self._memory

    @property
    def backend(self) -> Optional[StoreBackend]:
        """Backend that store operations should use right now, or None."""
        if self._state == ConnectionState.FALLBACK:
            return self._memory
        if self._state == ConnectionState.CONNECTING:
            return None
        return self._remote

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.info("Connection state changed", previous=self._state.value, state=state.value)
        self._state = state
        # connecting reports as disconnected on the gauge
        set_connection_mode(
            ConnectionState.DISCONNECTED.value if state == ConnectionState.CONNECTING else state.value
        )

    # --- observers ---

    def add_listener(self, event: LifecycleEvent, listener: LifecycleListener) -> None:
        self._listeners[event].append(listener)

    def remove_listener(self, event: LifecycleEvent, listener: LifecycleListener) -> None:
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    async def _emit(self, event: LifecycleEvent, **details: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(event, details)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "Lifecycle listener failed",
                    lifecycle_event=event.value,
                    error=str(exc),
                    exc_info=True,
                )

    # --- lifecycle ---

    async def initialize(self) -> ConnectionState:
        """
        Connect to the remote store, or enter fallback on failure.

        Never raises for connectivity problems. Returns the resulting state.
        """
        async with self._lock:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.FALLBACK):
                return self._state

            self._set_state(ConnectionState.CONNECTING)
            try:
                self._remote = await asyncio.wait_for(
                    self._connect_with_retry(),
                    timeout=self.settings.REDIS_CONNECT_DEADLINE,
                )
            except asyncio.TimeoutError:
                self.last_error = (
                    f"Connect deadline of {self.settings.REDIS_CONNECT_DEADLINE}s exceeded"
                )
                logger.error("Remote store connect deadline exceeded", error=self.last_error)
            except StoreUnavailableError as e:
                self.last_error = e.message
                logger.error(
                    "Remote store unreachable",
                    error=e.message,
                    attempts=self.connect_attempts,
                )

            if self._remote is None:
                await self._activate_fallback()
            else:
                self._set_state(ConnectionState.CONNECTED)
                self._start_probe()
                logger.info(
                    "Connected to remote store",
                    host=self.settings.REDIS_HOST,
                    port=self.settings.REDIS_PORT,
                    attempts=self.connect_attempts,
                )

        if self._state == ConnectionState.FALLBACK:
            await self._emit(LifecycleEvent.FALLBACK, last_error=self.last_error)
        else:
            await self._emit(LifecycleEvent.CONNECTED, attempts=self.connect_attempts)
        return self._state

    def retry_delay(self, retry: int) -> float:
        """Seconds before retry n: min(n * REDIS_RETRY_DELAY_SECONDS, REDIS_RETRY_DELAY_MAX_SECONDS)."""
        return min(
            retry * self.settings.REDIS_RETRY_DELAY_SECONDS,
            self.settings.REDIS_RETRY_DELAY_MAX_SECONDS,
        )

    async def _connect_with_retry(self) -> StoreBackend:
        """
        One initial attempt plus REDIS_MAX_CONNECT_RETRIES retries.
        """
        max_retries = self.settings.REDIS_MAX_CONNECT_RETRIES
        for retry in range(max_retries + 1):
            if retry:
                delay = self.retry_delay(retry)
                logger.warning("Retrying remote store connect", retry=retry, delay=delay)
                await asyncio.sleep(delay)

            self.connect_attempts += 1
            backend = self._backend_factory(self.settings)
            try:
                await backend.ping()
                return backend
            except asyncio.CancelledError:
                await self._close_quietly(backend)
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.warning(
                    "Remote store connect attempt failed",
                    attempt=self.connect_attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._close_quietly(backend)

        raise StoreUnavailableError(
            f"Remote store unreachable after {max_retries} retries",
            {"last_error": self.last_error},
        )

    async def _close_quietly(self, backend: StoreBackend) -> None:
        try:
            await backend.close()
        except Exception as e:
            logger.debug("Ignoring close error on failed backend", error=str(e))

    async def enable_fallback(self) -> MemoryBackend:
        """
        Switch to the in-process emulation. Idempotent.

        A second call returns the already-active emulation without touching
        its state.
        """
        async with self._lock:
            if self._state == ConnectionState.FALLBACK:
                return self._memory
            await self._activate_fallback()
        await self._emit(LifecycleEvent.FALLBACK, last_error=self.last_error)
        return self._memory

    async def _activate_fallback(self) -> None:
        """Caller holds the lock."""
        self._stop_probe()
        if self._remote is not None:
            await self._close_quietly(self._remote)
            self._remote = None
        self._set_state(ConnectionState.FALLBACK)
        self._start_sweep()
        logger.warning(
            "Fallback mode active: using in-process store emulation",
            last_error=self.last_error,
        )

    async def shutdown(self) -> None:
        """Stop background tasks and release resources. Safe from any state."""
        async with self._lock:
            previous = self._state
            self._stop_probe()
            self._stop_sweep()
            if self._remote is not None:
                try:
                    await self._remote.close()
                except Exception as e:
                    logger.warning("Error closing remote store connection", error=str(e))
                self._remote = None
            if previous == ConnectionState.FALLBACK:
                self._memory.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            logger.info("Connection supervisor shut down", previous_state=previous.value)
        await self._emit(LifecycleEvent.SHUTDOWN, previous_state=previous.value)

    async def reinitialize(self) -> ConnectionState:
        """The only way out of fallback: shut down, then connect from scratch."""
        await self.shutdown()
        return await self.initialize()

    # --- background tasks ---

    def _start_probe(self) -> None:
        self._stop_probe()
        self._probe_task = asyncio.create_task(self._probe_loop())

    def _stop_probe(self) -> None:
        # Never cancel the probe from inside itself
        if self._probe_task is not None and self._probe_task is not asyncio.current_task():
            self._probe_task.cancel()
        self._probe_task = None

    def _start_sweep(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    def _stop_sweep(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
        self._sweep_task = None

    async def probe(self) -> bool:
        """
        Run one liveness round-trip against the remote store.

        Demotes connected -> disconnected on failure, and restores
        disconnected -> connected on success.
        """
        remote = self._remote
        if remote is None or self._state not in (
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ):
            return False

        try:
            healthy = await remote.ping()
            error = None if healthy else "PING returned falsy reply"
        except Exception as e:
            healthy = False
            error = str(e)

        if healthy:
            if self._state == ConnectionState.DISCONNECTED:
                self._set_state(ConnectionState.CONNECTED)
                logger.info("Remote store reachable again")
                await self._emit(LifecycleEvent.CONNECTED, restored=True)
            return True

        self.last_error = error
        if self._state == ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error("Remote store health check failed", error=error)
            await self._emit(LifecycleEvent.HEALTH_FAILED, error=error)
        return False

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.HEALTH_PROBE_INTERVAL)
            await self.probe()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.FALLBACK_SWEEP_INTERVAL)
            self._memory.sweep_expired()
