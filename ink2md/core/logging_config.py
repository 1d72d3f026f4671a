"""
Centralized logging configuration for ink2md.

Usage:
    from ink2md.core.logging_config import setup_logging, get_logger

    setup_logging(level="INFO")
    logger = get_logger(__name__)
    logger.info("Transcribing page...")
"""
from __future__ import annotations

import logging
import os
import sys


LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "PIL")


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name. Defaults to env var INK2MD_LOG_LEVEL or INFO.
        log_file: Optional path; when given, records are also written there.
    """
    if level is None:
        level = os.environ.get("INK2MD_LOG_LEVEL", "INFO")
    resolved = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolved)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(resolved)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
