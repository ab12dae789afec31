"""Structured logging configuration using *structlog*."""

from __future__ import annotations

import logging
import sys

import structlog

# Chatty at INFO: httpx logs every poll request, aiosqlite every statement.
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine")


def setup_logging(level: str = "INFO", *, json_logs: bool | None = None) -> None:
    """Configure *structlog* and the stdlib loggers of third-party libraries.

    Console rendering on a TTY, JSON lines otherwise (override with
    ``json_logs``).  Call once at application startup.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr, level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
