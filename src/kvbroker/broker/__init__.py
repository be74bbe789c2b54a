"""Job broker: queues, workers, retries and pub/sub fan-out."""

from kvbroker.broker.engine import Broker, Worker
from kvbroker.broker.models import (
    BrokerEvent,
    Channels,
    Job,
    JobStatus,
    MessageEnvelope,
    QueueConfig,
    QueueStats,
)
from kvbroker.broker.pubsub import PubSub

__all__ = [
    "Broker",
    "BrokerEvent",
    "Channels",
    "Job",
    "JobStatus",
    "MessageEnvelope",
    "PubSub",
    "QueueConfig",
    "QueueStats",
    "Worker",
]
