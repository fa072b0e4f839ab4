"""
Logging configuration for the OIO trading system.

This module sets up logging with appropriate handlers for:
- Console output
- File logging
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    app_name: str = "oio_trader",
    enable_file_logging: bool = True
) -> logging.Logger:
    """
    Configure logging for the application.

    Handlers are attached to the ``app_name`` logger, so every module logger
    created with ``logging.getLogger(__name__)`` inside the package inherits them.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory to store log files. If None, uses default.
        app_name: Application name for the logger
        enable_file_logging: Whether to enable file logging

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    logger = logging.getLogger(app_name)
    logger.setLevel(level)
    logger.handlers = []  # Remove any existing handlers

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        if log_dir is None:
            # Default to logs directory in project root
            log_dir = Path(__file__).parents[2] / "logs"
        else:
            log_dir = Path(log_dir)

        os.makedirs(log_dir, exist_ok=True)

        log_file = log_dir / f"{app_name}.log"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.info(f"Logging initialized: {log_level.upper()} level")

    return logger
