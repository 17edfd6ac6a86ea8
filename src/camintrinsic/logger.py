"""
Logging helpers.

Library modules fetch their logger with ``get(__name__)``; applications call
``setup_logging`` once to attach a console (and optionally file) handler to
the package logger.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

PACKAGE_LOGGER = "camintrinsic"

# Format: [2025-10-31 10:15:30] [INFO] [camintrinsic.calibration.refine] Message
_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get(name: str) -> logging.Logger:
    return logging.getLogger(name)


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    console: bool = True,
    force: bool = False,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional path of a log file
        console: Whether to log to stdout
        force: Reconfigure even if handlers are already attached

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)

    configured = [h for h in logger.handlers if not isinstance(h, logging.NullHandler)]
    if configured and not force:
        return logger

    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers = []

    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger
