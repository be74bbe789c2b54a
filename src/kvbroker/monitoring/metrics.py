"""Prometheus metrics and in-process counters for the cache/broker layer.

Prometheus metrics are exposed at /metrics when the HTTP surface is enabled.
Alert rules should be configured for:
- kvbroker_connection_mode{mode="fallback"} == 1 (degraded durability)
- kvbroker_store_operations_total{outcome="error"} (absorbed store errors)
- kvbroker_jobs_total{outcome="failed"} (dead-lettered jobs need review)
"""

from dataclasses import asdict, dataclass

from prometheus_client import Counter, Gauge, Histogram

# === Store Metrics ===

store_operations_total = Counter(
    "kvbroker_store_operations_total",
    "Store adapter operations by operation name and outcome",
    ["operation", "outcome"],
)
"""
Labels:
- operation: get, set, hset, zadd, exec, ...
- outcome: ok, error
"""

cache_lookups_total = Counter(
    "kvbroker_cache_lookups_total",
    "Cache reads by result",
    ["result"],
)

connection_mode = Gauge(
    "kvbroker_connection_mode",
    "Current connection mode (1 for the active mode, 0 otherwise)",
    ["mode"],
)
"""
Labels:
- mode: connected, fallback, disconnected

Alert thresholds:
- WARN: fallback == 1 for more than 5 minutes
"""

# === Broker Metrics ===

jobs_total = Counter(
    "kvbroker_jobs_total",
    "Job lifecycle transitions by queue and outcome",
    ["queue", "outcome"],
)
"""
Labels:
- queue: queue name
- outcome: enqueued, completed, retried, failed, reaped
"""

job_duration_seconds = Histogram(
    "kvbroker_job_duration_seconds",
    "Job processing duration in seconds",
    ["queue", "success"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0],
)

messages_published_total = Counter(
    "kvbroker_messages_published_total",
    "Pub/sub messages published by channel",
    ["channel"],
)


def set_connection_mode(mode: str) -> None:
    """Flip the connection-mode gauge so exactly one mode reads 1."""
    for candidate in ("connected", "fallback", "disconnected"):
        connection_mode.labels(mode=candidate).set(1 if candidate == mode else 0)


@dataclass
class StoreStats:
    """Cumulative in-process counters reported by health checks."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)

    def reset(self) -> None:
        self.hits = self.misses = self.sets = self.deletes = self.errors = 0
