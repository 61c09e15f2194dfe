"""
Logging configuration shared by every monitor component
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOGGER_NAME = "postal-monitor"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class _BelowLevelFilter(logging.Filter):
    """Let through only records strictly below a level"""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def get_logger(part: Optional[str] = None) -> logging.Logger:
    """Child logger under the monitor's namespace"""
    if part:
        return logging.getLogger(f"{LOGGER_NAME}.{part}")
    return logging.getLogger(LOGGER_NAME)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the root monitor logger.

    Normal messages go to stdout and warnings/errors to stderr, so cron
    and systemd can tell them apart. A rotating file log is added when
    log_file is set. Calling this again replaces the handlers instead of
    stacking duplicates.
    """
    logger = get_logger()
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(fmt)
    stdout_handler.addFilter(_BelowLevelFilter(logging.WARNING))
    logger.addHandler(stdout_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(fmt)
    stderr_handler.setLevel(logging.WARNING)
    logger.addHandler(stderr_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(fmt)
        logger.addHandler(file_handler)

    return logger
