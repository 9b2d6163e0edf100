"""
Logging setup for scripts and entry points.

Library modules only ever call `logging.getLogger(__name__)`; handlers are
attached once, here, by whatever process drives the run (main.py, actions/).
Everything lives under the `flipper_lab` logger hierarchy.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


ROOT_LOGGER_NAME = "flipper_lab"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def setup_logging(
    level: Union[str, int] = "INFO",
    log_file: Optional[str] = None,
    to_console: bool = True,
) -> logging.Logger:
    """
    Configure the package logger with console and rotating-file handlers.

    Calling it again returns the already-configured logger without adding
    duplicate handlers.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level.
        log_file: Optional path for a rotating log file (5 MB x 3 backups).
        to_console: Attach a stderr handler.

    Returns:
        The `flipper_lab` logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if logger.handlers:
        return logger

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    if to_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(level)
        logger.addHandler(stream_handler)

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logger
