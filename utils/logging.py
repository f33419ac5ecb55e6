# utils/logging.py

"""Logging setup for the orchestrator and request-scoped log context."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from config import settings
from rich.console import Console
from rich.logging import RichHandler

logger = structlog.get_logger(__name__)


__all__ = ["setup_logging", "request_log_context"]

_QUIET_LOGGERS = ("httpx", "httpcore")


def _formatter() -> logging.Formatter:
    if settings.LOG_JSON:
        return structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )
    return logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)


def _file_handler(path: str) -> logging.Handler | None:
    try:
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=settings.LOG_FILE_MAX_BYTES,
            backupCount=settings.LOG_FILE_BACKUPS,
            mode="a",
            encoding="utf-8",
        )
    except OSError as e:  # pragma: no cover - path issues
        logger.error("Could not open log file.", path=path, error=str(e))
        return None
    handler.setFormatter(_formatter())
    return handler


def _console_handler() -> logging.Handler:
    # stdout is reserved for command output such as the --json envelope
    if settings.ENABLE_RICH_PROGRESS and not settings.LOG_JSON:
        return RichHandler(
            console=Console(stderr=True),
            level=settings.LOG_LEVEL_STR,
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter())
    return handler


def setup_logging() -> None:
    """Route structlog through stdlib logging with the configured handlers.

    Request id and tenant bound with :func:`request_log_context` are merged
    into every event logged inside that block.
    """
    if settings.LOG_JSON:
        renderer = structlog.stdlib.ProcessorFormatter.wrap_for_formatter
    else:
        renderer = structlog.stdlib.render_to_log_kwargs
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(settings.LOG_LEVEL_STR)
    if settings.LOG_FILE:
        file_handler = _file_handler(settings.LOG_FILE)
        if file_handler is not None:
            root_logger.addHandler(file_handler)
    root_logger.addHandler(_console_handler())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger().info(
        "Orchestrator logging configured.",
        log_level=logging.getLevelName(settings.LOG_LEVEL_STR),
        json=settings.LOG_JSON,
    )


@contextmanager
def request_log_context(request_id: str, tenant: str) -> Iterator[None]:
    """Bind ``request_id`` and ``tenant`` to all log events in the block."""
    with structlog.contextvars.bound_contextvars(request_id=request_id, tenant=tenant):
        yield
