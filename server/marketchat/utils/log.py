"""Logging configuration using Loguru.

The default stderr handler installed by Loguru is replaced by one that
honours ``LOG_LEVEL``.  When ``LOG_DIR`` is set a rotating file sink is
added as well.
"""

import os
import sys
from typing import Optional

from loguru import logger

from marketchat.config import Settings, get_settings


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{line} | {message}"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure Loguru sinks for the API process.

    Safe to call more than once; existing sinks are removed first so logs
    are never duplicated.
    """
    settings = settings or get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level, format=LOG_FORMAT)

    if settings.log_dir:
        os.makedirs(settings.log_dir, exist_ok=True)
        logger.add(
            os.path.join(settings.log_dir, "marketchat.log"),
            rotation="10 MB",
            retention="10 days",
            compression="zip",
            enqueue=True,
            level=settings.log_level,
            format=LOG_FORMAT,
        )
