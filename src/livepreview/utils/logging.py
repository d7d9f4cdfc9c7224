"""
Logging utilities for Live Preview
"""

import sys
import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def setup_logging(level: str = "INFO", console: bool = False) -> None:
    """
    Setup structured logging for Live Preview.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        console: Render human-readable lines instead of JSON
    """
    renderer = structlog.dev.ConsoleRenderer() if console else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="ISO", utc=True),
            renderer
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stderr keeps stdout free for CLI output
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper())
    )


@contextmanager
def session_context(session_id: str, **fields: Any) -> Iterator[None]:
    """
    Tag structured log entries with a preview session.

    Everything logged inside the block carries ``session_id`` (and any extra
    ``fields``), including tasks created inside it, since they copy the
    current context. The previous bindings are restored on exit.
    """
    with structlog.contextvars.bound_contextvars(session_id=session_id, **fields):
        yield


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger
    """
    return structlog.get_logger(name)
