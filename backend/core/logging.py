# backend/core/logging.py

import logging
import os
import sys
from typing import Dict, Optional


DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers and the level they are capped at.
LIBRARY_LEVELS: Dict[str, int] = {
    "redis": logging.WARNING,
    "jose": logging.WARNING,
    "uvicorn": logging.INFO,
    "uvicorn.error": logging.INFO,
    # one line per request is too much next to the chat worker output
    "uvicorn.access": logging.WARNING,
}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure application-wide logging.

    - Level comes from `level`, else LOG_LEVEL, else INFO
    - One stdout handler on the root logger (left alone if Uvicorn already added one)
    - Chatty libraries capped via LIBRARY_LEVELS
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    resolved = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        root_logger.addHandler(handler)

    for name, library_level in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str | None = None) -> logging.Logger:
    """
    Usage:
        from core.logging import get_logger

        logger = get_logger(__name__)
        logger.info("Room %s created", room.id)
    """
    return logging.getLogger(name)
