"""
Structured logging configuration
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional
import structlog
from structlog.stdlib import LoggerFactory

from .config import config


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Setup structured logging for the API server and the sync CLI.

    Args:
        level: Log level name (default: LOG_LEVEL)
        json_output: Render JSON lines; defaults to on unless DEBUG is set,
            where a readable console renderer is used instead
    """
    if json_output is None:
        json_output = not config.app.debug
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, (level or config.app.log_level).upper()),
    )

    # requests/urllib3 are chatty at debug
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger"""
    return structlog.get_logger(name)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Attach key/value pairs to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(**kwargs)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
