"""Logging configuration helpers for the pricewatch engine."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FILE_NAME = "pricewatch.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_settings = {"level": DEFAULT_LEVEL, "dir": LOG_DIR}
_loggers: set[str] = set()


def _build_handlers(level: str, log_dir: str) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=1_000_000,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    handlers.append(console_handler)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger with console and rotating file handlers."""

    logger = logging.getLogger(name)
    logger.setLevel(_settings["level"])
    logger.propagate = False

    if not logger.handlers:
        for handler in _build_handlers(_settings["level"], _settings["dir"]):
            logger.addHandler(handler)
    _loggers.add(name)
    return logger


def configure_logging(level: str | None = None, log_dir: str | None = None) -> None:
    """Apply ``log.level``/``log.dir`` settings to every logger handed out so far."""

    if level:
        _settings["level"] = level.upper()
    if log_dir is not None:
        _settings["dir"] = log_dir

    for name in _loggers:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(_settings["level"])
        for handler in _build_handlers(_settings["level"], _settings["dir"]):
            logger.addHandler(handler)
