"""
Logging Utilities

This module sets up logging for the project. Every module obtains its logger
through `setup_logger(__name__)` so that console formatting is consistent, and
the CLI can raise or lower verbosity for the whole package at once via
`configure_logging`.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER_NAME = "scan_registration"

_CONSOLE_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
_FILE_FORMAT = '%(asctime)s | %(levelname)s | %(processName)s[%(process)d] | %(name)s | %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logger(name: str,
                 level: int = logging.INFO,
                 log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with consistent formatting.

    Args:
        name: Logger name (usually __name__)
        level: Logging level (default: logging.INFO)
        log_file: Optional log file path. If provided, logs will be written to this file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding multiple handlers
    if logger.handlers:
        return logger

    logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        _add_file_handler(logger, log_file, level)

    return logger


def _add_file_handler(logger: logging.Logger, log_file: str, level: int) -> None:
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(file_handler)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Apply a level (and optional log file) to every logger of this package.

    Loggers created later through `setup_logger` keep their own default level,
    so call this after the package modules have been imported (the CLI does).

    Args:
        level: Level name such as "DEBUG" or "INFO"
        log_file: Optional path; a file handler is attached to each package logger
    """
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    manager = logging.Logger.manager
    for name, candidate in list(manager.loggerDict.items()):
        if not isinstance(candidate, logging.Logger):
            continue
        if name != PACKAGE_LOGGER_NAME and not name.startswith(PACKAGE_LOGGER_NAME + "."):
            continue
        candidate.setLevel(numeric)
        for handler in candidate.handlers:
            handler.setLevel(numeric)
        if log_file and not any(isinstance(h, logging.FileHandler) for h in candidate.handlers):
            _add_file_handler(candidate, log_file, numeric)
