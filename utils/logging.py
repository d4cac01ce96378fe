# utils/logging.py

"""Routes structlog events from every pipeline module into stdlib handlers."""

from __future__ import annotations

import logging
import logging.handlers
import os

import structlog
from config import settings
from rich.logging import RichHandler

logger = structlog.get_logger(__name__)

# Third-party loggers that would otherwise log every provider request.
_QUIET_LOGGERS = ("httpx", "httpcore")

__all__ = ["setup_logging"]


def _log_file_path() -> str | None:
    if not settings.LOG_FILE:
        return None
    if os.path.isabs(settings.LOG_FILE):
        return settings.LOG_FILE
    return os.path.join(settings.BASE_OUTPUT_DIR, settings.LOG_FILE)


def _file_handler(path: str) -> logging.Handler | None:
    """Rotating run log; ``None`` when the path cannot be opened."""
    try:
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
    except OSError as exc:
        logger.error("Could not open log file; logging to console only.", path=path, error=str(exc))
        return None
    handler.setFormatter(
        logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
    )
    return handler


def _console_handler() -> logging.Handler:
    if settings.ENABLE_RICH_LOGGING:
        # Model output is logged verbatim, so rich markup stays off.
        return RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT)
    )
    return handler


def setup_logging() -> None:
    """Configure structlog and the root logger once per process entry point."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(settings.LOG_LEVEL_STR)

    path = _log_file_path()
    if path:
        file_handler = _file_handler(path)
        if file_handler is not None:
            root_logger.addHandler(file_handler)
    root_logger.addHandler(_console_handler())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(
        "Pipeline logging configured.",
        log_level=logging.getLevelName(root_logger.level),
        log_file=path,
        rich_console=settings.ENABLE_RICH_LOGGING,
    )
