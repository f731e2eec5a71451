"""Logging configuration utilities."""

import logging
import sys
from typing import Optional, TextIO

import structlog

from .config import settings


def configure_logging(
    level: int | str | None = None,
    *,
    stream: TextIO | None = None,
    json: bool | None = None,
) -> None:
    """Route structlog events through the stdlib root logger.

    Services and workers emit one JSON object per line on stdout. The CLI
    passes ``stream=sys.stderr, json=False`` so its report on stdout stays
    readable.
    """

    log_level = level or (logging.DEBUG if settings.debug else logging.INFO)
    use_json = settings.log_json if json is None else json
    renderer = structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # force: celery and uvicorn may have touched the root logger first
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=stream or sys.stdout,
        force=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""

    return structlog.get_logger(name or "webp_pipeline")
