"""
Structured logging configuration using structlog.

One pipeline renders both structlog events and stdlib records (uvicorn,
SQLAlchemy, httpx), so dashboard access logs and sync events end up in
the same stream and format.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from tradedash.version import __version__

SERVICE_NAME = "tradedash"

# Third-party loggers and the level they are held at
LIBRARY_LEVELS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}

# Loggers uvicorn configures with its own handlers; routed to the root instead
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _build_handlers(level: int, log_file: Optional[Path]) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _renderer_chain(json_format: bool) -> list:
    if json_format:
        # JSON cannot carry exc_info tuples; render tracebacks to a string field
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.RichTracebackFormatter(
                show_locals=False,
                max_frames=10,
            ),
        )
    ]


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    json_format: bool = False,
) -> None:
    """
    Configure structured logging for the dashboard and the report CLI.

    Every event carries ``service`` and ``version`` fields.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        json_format: Use JSON format for logs (useful for production)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    handlers = _build_handlers(level, log_file)

    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=handlers,
        force=True,
    )

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, library_level))
    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + _renderer_chain(json_format),
    )
    for handler in handlers:
        handler.setFormatter(formatter)

    structlog.contextvars.bind_contextvars(service=SERVICE_NAME, version=__version__)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for ``name`` (typically __name__)."""
    return structlog.get_logger(name)
