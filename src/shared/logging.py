"""Structured logging setup for the MCP Hub.

Uses structlog for consistent, machine-parseable log output.
"""

import logging
import sys
from typing import Any, Optional, TextIO

import structlog
from structlog.types import Processor


def setup_logging(
    log_level: str = "INFO",
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON; otherwise, use colored console output
        stream: Output stream. The stdio channel passes stderr so that
            stdout carries protocol traffic only.
    """
    stream = stream or sys.stdout

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if json_output:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=stream.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    # uvicorn and httpx log through the standard library
    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically module name)
        **initial_context: Initial context values to bind to logger

    Returns:
        A bound structlog logger instance
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def short_id(session_id: Optional[str]) -> str:
    """Shortened session id for log lines."""
    if not session_id:
        return "-"
    return session_id[:8]


def bind_context(**context: Any) -> None:
    """Bind context values to all loggers in the current context."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    """Clear all bound context values."""
    structlog.contextvars.clear_contextvars()
