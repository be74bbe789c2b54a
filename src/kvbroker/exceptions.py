"""
Exception hierarchy for the cache/broker layer.

Store backends raise these (or redis-py errors); the StoreAdapter absorbs
them and returns neutral defaults. Broker configuration errors are raised
synchronously to the caller.
"""


class KVBrokerError(Exception):
    """
    Base exception for all cache/broker errors.

    Carries an optional details dict for structured logging.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StoreError(KVBrokerError):
    """Raised by a store backend when an operation cannot be applied."""
    pass


class WrongTypeError(StoreError):
    """
    Raised when an operation targets a key holding a different value type.

    Mirrors the remote store's WRONGTYPE reply (e.g. HGET on a string key).
    """

    def __init__(self, key: str, expected: str, actual: str):
        super().__init__(
            f"WRONGTYPE Operation against key '{key}' holding the wrong kind of value",
            {"key": key, "expected": expected, "actual": actual},
        )


class StoreUnavailableError(StoreError):
    """Raised when no backend is bound (supervisor disconnected)."""
    pass


class BrokerError(KVBrokerError):
    """Base exception for broker configuration errors."""
    pass


class QueueNotFoundError(BrokerError):
    """Raised when a job or worker targets a queue that was never created."""

    def __init__(self, queue_name: str):
        super().__init__(f"Queue {queue_name} not found", {"queue": queue_name})
        self.queue_name = queue_name


class InvalidQueueNameError(BrokerError):
    """Raised when a queue name is empty or contains unsupported characters."""

    def __init__(self, queue_name: str):
        super().__init__(f"Invalid queue name: {queue_name!r}", {"queue": queue_name})
        self.queue_name = queue_name


class WorkerAlreadyRegisteredError(BrokerError):
    """Raised when process_queue is called twice for the same queue."""

    def __init__(self, queue_name: str):
        super().__init__(
            f"Queue {queue_name} already has a worker", {"queue": queue_name}
        )
        self.queue_name = queue_name
