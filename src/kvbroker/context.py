"""
Application context: the single explicitly-constructed owner of the
supervisor, store adapter, cache facade, pub/sub, broker and temp storage.

Build it once at process start and pass it to collaborators:

    async with AppContext.create(settings) as ctx:
        await ctx.cache.set("greeting", {"hello": "world"}, ttl=60)
        await ctx.broker.create_queue("emails")
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from kvbroker.broker.engine import Broker
from kvbroker.broker.pubsub import PubSub
from kvbroker.cache import CacheFacade
from kvbroker.config import Settings
from kvbroker.health import HealthReport, check_health
from kvbroker.services.temp_storage import TempStorage
from kvbroker.store.adapter import StoreAdapter
from kvbroker.store.memory import MemoryBackend
from kvbroker.supervisor import (
    BackendFactory,
    ConnectionSupervisor,
    LifecycleEvent,
)

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    supervisor: ConnectionSupervisor
    store: StoreAdapter
    cache: CacheFacade
    pubsub: PubSub
    broker: Broker
    temp_storage: TempStorage
    started_at: Optional[float] = field(default=None)

    @classmethod
    def create(
        cls,
        settings: Settings,
        backend_factory: Optional[BackendFactory] = None,
        memory: Optional[MemoryBackend] = None,
    ) -> "AppContext":
        """Wire every component; nothing connects until start()."""
        supervisor = ConnectionSupervisor(settings, backend_factory=backend_factory, memory=memory)
        store = StoreAdapter(supervisor)
        cache = CacheFacade(store)
        pubsub = PubSub(store, publisher=settings.APP_NAME)
        broker = Broker(store, pubsub, settings)
        temp_storage = TempStorage(cache, cleanup_interval=settings.TEMP_CLEANUP_INTERVAL)
        context = cls(
            settings=settings,
            supervisor=supervisor,
            store=store,
            cache=cache,
            pubsub=pubsub,
            broker=broker,
            temp_storage=temp_storage,
        )
        # A new backend means transport subscriptions must be re-opened
        supervisor.add_listener(LifecycleEvent.CONNECTED, context._on_backend_changed)
        supervisor.add_listener(LifecycleEvent.FALLBACK, context._on_backend_changed)
        return context

    async def _on_backend_changed(self, event: LifecycleEvent, details: dict) -> None:
        await self.pubsub.resubscribe()

    async def start(self) -> "AppContext":
        state = await self.supervisor.initialize()
        self.temp_storage.start()
        self.started_at = time.time()
        logger.info("Application context started", mode=state.value)
        return self

    async def shutdown(self) -> None:
        """Stop workers and channels first, then release the connection."""
        await self.broker.shutdown()
        await self.temp_storage.shutdown()
        await self.supervisor.shutdown()
        logger.info("Application context shut down")

    async def health_check(self) -> HealthReport:
        return await check_health(self.supervisor, self.store, self.started_at)

    async def __aenter__(self) -> "AppContext":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
