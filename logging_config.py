"""
Centralized logging configuration for the application.
"""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Setup root logging for the service.

    Args:
        log_level: Level name such as "DEBUG" or "INFO"
        log_file: Optional path, log records are also appended there
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO),
                        format=LOG_FORMAT,
                        handlers=handlers,
                        force=True)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (usually called with __name__)."""
    return logging.getLogger(name)
