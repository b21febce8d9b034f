"""Utility functions."""

from calendar_bot.utils.async_helpers import KeyedLock, SingleFlight, run_async
from calendar_bot.utils.logging import get_logger, setup_logging

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    # Async
    "run_async",
    "SingleFlight",
    "KeyedLock",
]
