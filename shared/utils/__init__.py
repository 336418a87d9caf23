"""
Log Pulse - Shared Utilities Package
====================================

Common utility functions for logging and retry logic.
"""

from shared.utils.logging import get_logger, setup_logging
from shared.utils.retry import retry_async, RetryConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "retry_async",
    "RetryConfig",
]
