"""
GM Pipeline Logging Configuration
Structured logging with JSON output for the worker processes
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

# Delivery context attached through ``extra=`` by the messaging layer
CONTEXT_FIELDS = (
    "message_type",
    "message_id",
    "delivery_tag",
    "routing_key",
    "attempt",
    "correlation_token",
    "stage",
)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter for structured logging"""

    def __init__(self, *args, service_name: str = "gm-pipeline", **kwargs):
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add custom fields to log record"""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_logs: bool = True,
    logger_name: str = "gmpipeline",
) -> logging.Logger:
    """
    Setup centralized logging configuration

    Args:
        service_name: Name of the worker process (e.g., 'document-worker')
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to use JSON formatting (True for production)
        logger_name: Package logger that owns the handler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))

    if json_logs:
        formatter = CustomJsonFormatter(
            fmt="%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={
                "levelname": "level",
                "name": "logger",
            },
            service_name=service_name,
        )
    else:
        formatter = logging.Formatter(
            fmt=f"%(asctime)s - {service_name} - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def log_error_with_context(
    logger: logging.Logger, error: Exception, context: Optional[Dict[str, Any]] = None
):
    """
    Log error with full context and stack trace

    Args:
        logger: Logger instance
        error: Exception to log
        context: Additional context information
    """
    extra = {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }

    if context:
        extra.update(context)

    details = ", ".join(f"{key}={value}" for key, value in (context or {}).items())
    logger.error(
        f"Error occurred: {type(error).__name__}: {error}"
        + (f" ({details})" if details else ""),
        exc_info=error,
        extra=extra,
    )
