"""
Logging setup for the docgraph service.

Every module logs through ``logging.getLogger(__name__)``; this module only
wires the handlers once at process start.
"""

from __future__ import annotations
import logging
import sys
from typing import Optional, Union

from .config import settings


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: Union[int, str, None] = None,
    log_format: Optional[str] = None,
    logger_name: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for the service.

    Args:
        level: Logging level (default: ``settings.log_level``)
        log_format: Custom format string (optional)
        logger_name: Name for the returned logger

    Returns:
        Configured logger instance
    """
    if level is None:
        level = settings.log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=log_format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logger = logging.getLogger(logger_name or settings.logger_name)
    logger.setLevel(level)
    return logger

