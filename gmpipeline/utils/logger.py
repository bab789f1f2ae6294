"""
GM Pipeline Logger
Centralized logging configuration
"""

import logging
import sys
from typing import Optional

from .config import get_settings


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get configured logger instance

    The console handler is attached once to the top-level package logger
    so module loggers (``gmpipeline.messaging.consumer`` etc.) share it.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger
    """
    settings = get_settings()
    logger_name = name or settings.service_name

    package_logger = logging.getLogger(logger_name.split(".")[0])

    # Avoid duplicate handlers
    if not package_logger.handlers:
        log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
        package_logger.setLevel(log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)

        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        console_handler.setFormatter(formatter)

        package_logger.addHandler(console_handler)

    return logging.getLogger(logger_name)
