"""
FastAPI exception handlers for structured error responses.

Maps broker configuration errors to HTTP status codes.
"""

import logging
from datetime import datetime, timezone

from fastapi import Request, status
from fastapi.responses import JSONResponse

from kvbroker.exceptions import BrokerError, InvalidQueueNameError, QueueNotFoundError

logger = logging.getLogger(__name__)


def _error_body(error: str, exc: BrokerError) -> dict:
    return {
        "error": error,
        "message": exc.message,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def queue_not_found_handler(request: Request, exc: QueueNotFoundError) -> JSONResponse:
    """
    Handle lookups of queues that were never created.

    Maps to 404 Not Found.
    """
    logger.info("Queue not found", extra={"queue": exc.queue_name})
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body("queue_not_found", exc),
    )


async def invalid_queue_name_handler(request: Request, exc: InvalidQueueNameError) -> JSONResponse:
    """Maps to 400 Bad Request."""
    logger.warning("Invalid queue name", extra={"queue": exc.queue_name})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body("invalid_queue_name", exc),
    )


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    """Any other broker configuration error: 409 Conflict."""
    logger.warning("Broker error", extra={"error_type": type(exc).__name__, "details": exc.details})
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=_error_body("broker_error", exc),
    )


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected errors.

    Maps to 500 Internal Server Error.
    """
    logger.exception("Unexpected error", extra={"error_type": type(exc).__name__})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# Exception handler mapping for FastAPI app.add_exception_handler()
EXCEPTION_HANDLERS = {
    QueueNotFoundError: queue_not_found_handler,
    InvalidQueueNameError: invalid_queue_name_handler,
    BrokerError: broker_error_handler,
    Exception: generic_error_handler,
}
