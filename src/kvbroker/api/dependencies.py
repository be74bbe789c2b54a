"""
FastAPI dependency injection.

The AppContext is built by the application lifespan and stored on
app.state; handlers receive it (or its parts) through these dependencies.
"""

from fastapi import Depends, Request

from kvbroker.broker.engine import Broker
from kvbroker.context import AppContext


def get_context(request: Request) -> AppContext:
    """
    Get the application context created at startup.

    Args:
        request: Incoming request (injected)

    Returns:
        AppContext instance
    """
    return request.app.state.context


def get_broker(context: AppContext = Depends(get_context)) -> Broker:
    return context.broker
