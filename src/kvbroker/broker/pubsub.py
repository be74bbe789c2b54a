"""
Channel-based publish/subscribe fan-out.

Messages are wrapped in a JSON MessageEnvelope. Delivery is at-most-once and
non-durable: only handlers subscribed at publish time receive a message.
Independent of the queue mechanism; the Broker uses it for lifecycle events.
"""

import asyncio
import inspect
import secrets
import time
from collections import defaultdict
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from kvbroker.broker.models import MessageEnvelope
from kvbroker.monitoring.metrics import messages_published_total
from kvbroker.store.adapter import StoreAdapter

logger = structlog.get_logger(__name__)

# Handler called with (data, metadata); may be a plain function or a coroutine function
MessageHandler = Callable[[Any, dict[str, Any]], Any]


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class PubSub:
    """
    Fan-out over the store's pub/sub transport.

    Each channel holds one transport subscription no matter how many local
    handlers are attached to it.

    Args:
        store: Store adapter carrying the transport
        publisher: Name recorded in every envelope's metadata
    """

    def __init__(self, store: StoreAdapter, publisher: str = "kvbroker"):
        self.store = store
        self.publisher = publisher
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    @property
    def channels(self) -> list[str]:
        return [channel for channel, handlers in self._handlers.items() if handlers]

    async def publish(
        self,
        channel: str,
        data: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Publish a message; returns its id.

        Publishing to a channel with no subscribers is not an error: the
        message is simply not delivered.
        """
        envelope = MessageEnvelope(
            id=generate_message_id(),
            channel=channel,
            data=data,
            metadata={
                **(metadata or {}),
                "timestamp": int(time.time() * 1000),
                "publisher": self.publisher,
            },
        )
        receivers = await self.store.publish(channel, envelope.model_dump_json())
        messages_published_total.labels(channel=channel).inc()
        logger.debug("Message published", channel=channel, message_id=envelope.id, receivers=receivers)
        return envelope.id

    async def subscribe(self, channel: str, handler: MessageHandler) -> bool:
        """Attach a handler; the first handler on a channel opens the transport subscription."""
        first = not self._handlers[channel]
        if first:
            subscribed = await self.store.subscribe(channel, self._dispatch)
            if not subscribed:
                logger.warning("Subscribe failed", channel=channel)
                return False
        self._handlers[channel].append(handler)
        logger.info("Subscribed to channel", channel=channel, handlers=len(self._handlers[channel]))
        return True

    async def unsubscribe(self, channel: str, handler: Optional[MessageHandler] = None) -> None:
        """Detach one handler, or every handler when none is given."""
        handlers = self._handlers.get(channel, [])
        if handler is not None and handler in handlers:
            handlers.remove(handler)
        else:
            handlers.clear()

        if not handlers:
            self._handlers.pop(channel, None)
            await self.store.unsubscribe(channel)
            logger.info("Unsubscribed from channel", channel=channel)

    async def unsubscribe_all(self) -> None:
        for channel in list(self._handlers):
            await self.unsubscribe(channel)
        for task in list(self._pending):
            task.cancel()

    async def resubscribe(self) -> None:
        """Re-open transport subscriptions after the bound backend changed."""
        for channel in self.channels:
            await self.store.subscribe(channel, self._dispatch)
        if self._handlers:
            logger.info("Re-subscribed channels", channels=self.channels)

    def _dispatch(self, channel: str, raw: str) -> None:
        """Transport listener: unwrap the envelope and fan out to handlers."""
        try:
            envelope = MessageEnvelope.model_validate_json(raw)
            data, metadata = envelope.data, envelope.metadata
        except ValidationError:
            # Foreign publishers may send bare payloads
            data, metadata = raw, {}

        for handler in list(self._handlers.get(channel, [])):
            try:
                result = handler(data, metadata)
            except Exception as exc:
                logger.error("Message handler failed", channel=channel, error=str(exc), exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_handler(channel, result))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def _await_handler(self, channel: str, awaitable: Any) -> None:
        try:
            await awaitable
        except Exception as exc:
            logger.error("Message handler failed", channel=channel, error=str(exc), exc_info=True)
