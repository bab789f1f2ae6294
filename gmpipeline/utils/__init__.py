"""
GM Pipeline Utilities
Configuration, logging, errors and metrics shared by every worker
"""

from .config import Settings, get_settings
from .errors import (
    BrokerConnectionError,
    MessageDecodeError,
    PipelineError,
    PublishError,
    ShutdownRequested,
    VectorStoreError,
)
from .logger import get_logger

__all__ = [
    # Config
    "get_settings",
    "Settings",
    # Logging
    "get_logger",
    # Errors
    "PipelineError",
    "BrokerConnectionError",
    "PublishError",
    "MessageDecodeError",
    "ShutdownRequested",
    "VectorStoreError",
]
