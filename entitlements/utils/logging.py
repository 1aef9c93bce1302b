"""Logging infrastructure setup

All entitlement loggers hang off the ``entitlements`` logger. Records are
stamped with the id of the HTTP request being served so a denial, a lock
timeout and the response that reported them can be tied together.
"""

import logging
import logging.handlers
import sys
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Optional

from entitlements.config.settings import LoggingConfig, get_settings

ROOT_LOGGER_NAME = "entitlements"

_request_id: ContextVar[str] = ContextVar("entitlements_request_id", default="-")


def bind_request_id(request_id: str) -> Token:
    """Attach ``request_id`` to records logged from the current context"""
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Adds ``request_id`` to every record passing through a handler"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


class ColoredFormatter(logging.Formatter):
    """Colored log formatter for console output"""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
        'RESET': '\033[0m'
    }

    def format(self, record):
        # Color a copy so the file handler keeps the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname)
        if color:
            record.levelname = f"{color}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def _add_handler(logger: logging.Logger, handler: logging.Handler, level: int,
                 formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    logger.addHandler(handler)


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Configure the entitlements logger tree"""

    if config is None:
        config = get_settings().logging

    level = getattr(logging, config.level.upper())

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    _add_handler(logger, logging.StreamHandler(sys.stdout), level, ColoredFormatter(config.format))

    if config.file_path:
        file_path = Path(config.file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=config.file_path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count
        )
        _add_handler(logger, file_handler, level, logging.Formatter(config.format))

    # Prevent duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module"""
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
