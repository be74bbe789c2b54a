"""
HTTP endpoints: health and queue statistics.
"""

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from kvbroker.api.dependencies import get_broker, get_context
from kvbroker.broker.engine import Broker
from kvbroker.broker.models import QueueStats
from kvbroker.context import AppContext
from kvbroker.health import HealthReport

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthReport,
    summary="Cache/broker health check",
    description="""
    Report the connection mode and cumulative store counters.

    - connected: remote store reachable (latency included)
    - fallback: in-process emulation active (degraded, still serving)
    - disconnected: no usable backend
    """,
    responses={
        200: {"description": "Connected or in fallback"},
        503: {"description": "Disconnected"},
    },
)
async def health_check(context: AppContext = Depends(get_context)) -> JSONResponse:
    report = await context.health_check()
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if report.mode == "disconnected"
        else status.HTTP_200_OK
    )
    logger.debug("Health check", status=report.status, mode=report.mode)
    return JSONResponse(status_code=status_code, content=report.model_dump(mode="json"))


@router.get("/queues", response_model=dict[str, QueueStats], summary="Stats for every queue")
async def list_queues(broker: Broker = Depends(get_broker)) -> dict[str, QueueStats]:
    return await broker.get_all_queue_stats()


@router.get(
    "/queues/{name}/stats",
    response_model=QueueStats,
    summary="Stats for one queue",
    responses={404: {"description": "Queue not found"}},
)
async def queue_stats(name: str, broker: Broker = Depends(get_broker)) -> QueueStats:
    return await broker.get_queue_stats(name)
