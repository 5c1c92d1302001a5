"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development.

Log format (production):
    {
        "timestamp": "2026-10-19T10:30:45.123456Z",
        "level": "info",
        "event": "forget.shard_finished",
        "logger": "rtbf.services.shard_engine",
        "request_id": 42,
        "shard_id": "enwiki",
        "failures": 0
    }

Request and shard identifiers are bound with bind_forget_context() so
every log line emitted while a work item runs carries them.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_forget_context(request_id: int, shard_id: str | None = None) -> None:
    """Bind the request (and optionally shard) being processed to log context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)
    if shard_id is not None:
        structlog.contextvars.bind_contextvars(shard_id=shard_id)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
