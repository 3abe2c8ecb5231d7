"""
Logging Setup

Configures structlog once at startup: console rendering locally, JSON lines
when ``log_json`` is enabled.
"""

import logging
import sys

import structlog


def configure_logging(log_level: str = "INFO", json: bool = False) -> None:
    """
    Configure structlog processors and the stdlib root logger.

    Args:
        log_level: Minimum level name (DEBUG, INFO, ...)
        json: Render events as JSON instead of console key/value pairs
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
