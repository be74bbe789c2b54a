"""
Health report for external monitoring.

Status mapping:
- connected + probe ok -> healthy
- fallback             -> degraded (in-process emulation, reduced durability)
- anything else        -> unhealthy
"""

import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from kvbroker.store.adapter import StoreAdapter
from kvbroker.supervisor import ConnectionState, ConnectionSupervisor


class HealthReport(BaseModel):
    """Result of AppContext.health_check()."""

    status: str = Field(..., description="healthy | degraded | unhealthy")
    mode: str = Field(..., description="connected | fallback | disconnected")
    latency_ms: Optional[float] = Field(default=None, description="Remote round-trip, when connected")
    memory_items: Optional[int] = Field(default=None, description="Emulation entries, when in fallback")
    stats: dict[str, int] = Field(default_factory=dict)
    connect_attempts: int = 0
    last_error: Optional[str] = None
    uptime_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


async def check_health(
    supervisor: ConnectionSupervisor,
    store: StoreAdapter,
    started_at: Optional[float] = None,
) -> HealthReport:
    latency_ms = None
    memory_items = None

    if supervisor.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
        # probe() also demotes/restores the connection state
        started = time.perf_counter()
        if await supervisor.probe():
            latency_ms = round((time.perf_counter() - started) * 1000, 2)

    state = supervisor.state
    if state == ConnectionState.FALLBACK:
        memory_items = supervisor.memory.size()
        status = "degraded"
    elif state == ConnectionState.CONNECTED and latency_ms is not None:
        status = "healthy"
    else:
        status = "unhealthy"

    return HealthReport(
        status=status,
        mode=state.value if state != ConnectionState.CONNECTING else ConnectionState.DISCONNECTED.value,
        latency_ms=latency_ms,
        memory_items=memory_items,
        stats=store.stats.snapshot(),
        connect_attempts=supervisor.connect_attempts,
        last_error=supervisor.last_error,
        uptime_seconds=round(time.time() - started_at, 1) if started_at else 0.0,
    )
