"""
FastAPI application entry point for the cache/broker layer.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from kvbroker.api.error_handlers import EXCEPTION_HANDLERS
from kvbroker.api.routes import router
from kvbroker.config import Settings, settings
from kvbroker.context import AppContext
from kvbroker.logging_config import configure_logging
from kvbroker.supervisor import BackendFactory

configure_logging(settings)
logger = structlog.get_logger(__name__)


def create_app(
    app_settings: Settings = settings,
    backend_factory: Optional[BackendFactory] = None,
) -> FastAPI:
    """
    Build the FastAPI app; the lifespan owns the AppContext.

    Args:
        app_settings: Settings for the context
        backend_factory: Remote backend factory override (tests)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Application startup",
            version=app_settings.APP_VERSION,
            environment=app_settings.ENVIRONMENT,
            redis_host=app_settings.REDIS_HOST,
            redis_port=app_settings.REDIS_PORT,
        )
        context = AppContext.create(app_settings, backend_factory=backend_factory)
        app.state.context = context
        await context.start()
        logger.info("Application startup complete", mode=context.supervisor.state.value)
        try:
            yield
        finally:
            logger.info("Application shutdown")
            await context.shutdown()
            logger.info("Application shutdown complete")

    app = FastAPI(
        title="KV Broker",
        description="Resilient cache and job broker over a Redis-compatible store",
        version=app_settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Register exception handlers
    for exc_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exc_class, handler)

    app.include_router(router, tags=["health"])

    # Prometheus metrics instrumentation
    if app_settings.PROMETHEUS_ENABLED:
        Instrumentator().instrument(app).expose(app)

    @app.get("/")
    async def root():
        """Root endpoint with documentation links."""
        return {
            "service": app_settings.APP_NAME,
            "version": app_settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics" if app_settings.PROMETHEUS_ENABLED else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kvbroker.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # Only for development
    )
