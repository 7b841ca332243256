"""Logging configuration."""

import logging
import sys

import structlog

from clinic_scheduling.config import Settings, settings


def build_processors(config: Settings) -> list:
    """Processor chain for scheduling events, ending in the configured renderer."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def configure_logging(config: Settings | None = None) -> None:
    """
    Configure structured logging.

    Every event carries the service name and environment, so lines from
    several scheduling workers sharing one database can be told apart.
    """
    config = config or settings

    structlog.configure(
        processors=build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(
        service=config.app_name,
        environment=config.environment,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.log_level.upper()),
    )
