"""Logging configuration for forq."""

import logging
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

import structlog

from forq.config import LoggingConfig, get_config

_log_file: IO[str] | None = None


def _open_log_file(path: str) -> IO[str]:
    global _log_file
    if _log_file is not None and not _log_file.closed:
        _log_file.close()
    log_path = Path(path).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _log_file = open(log_path, "a", encoding="utf-8")
    return _log_file


def configure_logging(settings: LoggingConfig | None = None) -> None:
    """Configure structured logging for forq."""
    settings = settings or get_config().logging

    log_level = getattr(logging, settings.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # Log files are never colored
    if settings.format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=not settings.file))
    else:
        processors.append(structlog.processors.JSONRenderer())

    output = _open_log_file(settings.file) if settings.file else sys.stderr

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


@contextmanager
def bind_turn_context(**values: object) -> Iterator[str]:
    """Bind a fresh turn id (plus extra values) to every log line in the block."""
    turn_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(turn_id=turn_id, **values):
        yield turn_id


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
