"""Monitoring and metrics instrumentation for the cache/broker layer."""

from kvbroker.monitoring.metrics import (
    StoreStats,
    cache_lookups_total,
    connection_mode,
    job_duration_seconds,
    jobs_total,
    messages_published_total,
    set_connection_mode,
    store_operations_total,
)

__all__ = [
    "StoreStats",
    "cache_lookups_total",
    "connection_mode",
    "job_duration_seconds",
    "jobs_total",
    "messages_published_total",
    "set_connection_mode",
    "store_operations_total",
]
