"""
Logging setup for the quotefetch CLI and for applications embedding it.

Library modules only create loggers; nothing is configured on import.
"""

from __future__ import annotations

from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union
import copy
import logging
import sys

from pythonjsonlogger.json import JsonFormatter

LOGGER_NAME = "quotefetch"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | [%(name)s] %(message)s"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def format(self, record):
        # other handlers see the same record, so colour a copy
        record = copy.copy(record)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.getMessage()}{self.RESET}"
        record.args = None
        return super().format(record)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Configure the ``quotefetch`` logger.

    Args:
        level: Console log level
        log_file: If set, also write daily-rotated JSON logs there (full
                  verbosity, 7 days kept) plus ``<log_file>.error.log`` with
                  errors only

    Returns:
        The configured logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = TimedRotatingFileHandler(
            path, when="midnight", interval=1, backupCount=7, encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s %(lineno)d %(funcName)s',
            rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
        ))
        logger.addHandler(file_handler)

        error_handler = logging.FileHandler(f"{path}.error.log", mode='a', encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(error_handler)

    logger.propagate = False
    return logger
