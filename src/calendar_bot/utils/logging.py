"""Logging configuration."""

import logging
import sys

from calendar_bot.config import get_settings


def setup_logging() -> None:
    """Configure logging for the service."""
    settings = get_settings()

    logger = logging.getLogger("calendar_bot")
    logger.setLevel(settings.log_level)

    # Avoid stacking handlers when the app module is imported more than once
    if any(getattr(h, "_calendar_bot", False) for h in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.log_level)
    handler._calendar_bot = True

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    # httpx logs every provider request at INFO, including query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get logger instance."""
    return logging.getLogger(f"calendar_bot.{name}")
