"""structlog setup for kvbroker processes.

Production writes one JSON object per line; development writes colored
console lines. Records from stdlib loggers (redis, uvicorn, asyncio) run
through the same pre-chain so every line carries a timestamp, level and
the service name.
"""

import logging
import sys
from typing import IO, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from kvbroker.config import Settings

# Held at WARNING regardless of LOG_LEVEL
QUIET_LOGGERS = ("asyncio", "redis", "uvicorn.access")


def app_context(app_name: str) -> Processor:
    """Build a processor that stamps events with the service name."""

    def add_app(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app", app_name)
        return event_dict

    return add_app


def configure_logging(settings: Settings, stream: Optional[IO[str]] = None) -> logging.Handler:
    """
    Route structlog and stdlib logging through one handler on the root logger.

    Args:
        settings: Uses LOG_LEVEL, ENVIRONMENT and APP_NAME
        stream: Output stream (stdout by default)

    Returns:
        The installed handler
    """
    stream = stream or sys.stdout
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    production = settings.ENVIRONMENT.lower() == "production"

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        app_context(settings.APP_NAME),
    ]
    if production:
        pre_chain.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)
    )
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).debug(
        "Logging configured",
        level=settings.LOG_LEVEL,
        environment=settings.ENVIRONMENT,
    )
    return handler
