"""
Logging setup for the voice relay.

Everything the relay logs goes through the single ``voice_relay`` logger: call
lifecycle, provider connections and dropped frames. Records are written to
stdout and to a size-rotated file under ``logs/``; the logger does not
propagate, so uvicorn's own handlers never duplicate relay output.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from voice_relay.config.constants import LOGGER_NAME

DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RECORD_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

LOG_DIR = Path("logs")
LOG_FILE = LOG_DIR / "voice_relay.log"
ROTATE_BYTES = 10 * 1024 * 1024
ROTATE_KEEP = 5

# Provider SDKs log every request at INFO
VENDOR_LOGGERS = ("httpx", "openai", "websockets")


def _file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    """Return a rotating handler for LOG_FILE, or None when the directory is not writable."""
    try:
        LOG_DIR.mkdir(exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=ROTATE_BYTES, backupCount=ROTATE_KEEP)
    except OSError:
        return None
    handler.setFormatter(formatter)
    return handler


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Set up the ``voice_relay`` logger. Safe to call again with a new level.

    Args:
        level: Level name; falls back to the LOG_LEVEL environment variable

    Returns:
        logging.Logger: The relay logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, (level or DEFAULT_LEVEL).upper(), logging.INFO))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(RECORD_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)
    else:
        logger.warning(f"File logging disabled, cannot write to {LOG_FILE}")

    for name in VENDOR_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(f"Logging configured at {logging.getLevelName(logger.level)}")
    return logger
