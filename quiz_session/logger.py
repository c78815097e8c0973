"""
Logging setup shared by every quiz_session module.
"""

import logging
import sys
from typing import Optional

from quiz_session.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(level: Optional[str]) -> int:
    return getattr(logging, (level or settings.log_level).upper(), logging.INFO)


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Return a stdout logger for a module.

    Args:
        name: Logger name (usually __name__)
        level: Level name overriding LOG_LEVEL, e.g. from injected Settings

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    log_level = _resolve_level(level)

    if logger.handlers:
        # Already configured; only an explicit level changes it
        if level is not None:
            logger.setLevel(log_level)
            for handler in logger.handlers:
                handler.setLevel(log_level)
        return logger

    logger.setLevel(log_level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)
    return logger
