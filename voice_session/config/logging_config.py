"""
Logging setup for the session manager.

All modules log through the ``voice_session`` logger. It writes to stdout and
to a size-rotated file; the websocket library's own frame-level debug output is
kept at WARNING unless the session itself runs at DEBUG.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from voice_session.config.constants import LOGGER_NAME

DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_LOG_DIR = Path("logs")
LOG_FILE_NAME = "voice_session.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Third-party loggers that flood the console at DEBUG
NOISY_LOGGERS = ("websockets", "websockets.client", "asyncio")


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Optional[str] = None, log_dir: Union[str, Path, None] = None) -> logging.Logger:
    """
    Configure the package logger with console and file handlers.

    Safe to call more than once; existing handlers are replaced.

    Args:
        level: Level name; falls back to LOG_LEVEL, then INFO
        log_dir: Directory for the rotating log file (default ``logs/``)

    Returns:
        logging.Logger: The configured logger instance
    """
    session_level = _resolve_level(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(session_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    directory = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(directory / LOG_FILE_NAME, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
        rotating.setFormatter(formatter)
        logger.addHandler(rotating)
    except OSError as e:
        logger.warning(f"File logging disabled, could not open {directory / LOG_FILE_NAME}: {e}")

    library_level = logging.DEBUG if session_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger.propagate = False
    logger.debug(f"Logging configured at {logging.getLevelName(session_level)}, file log in {directory}")
    return logger
