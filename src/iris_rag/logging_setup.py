"""
Logging Configuration

Library modules only create named loggers under the ``iris_rag`` hierarchy
and never configure handlers on import. Host applications and the bundled
scripts call :func:`setup_logging` once at startup.
"""

from __future__ import annotations

import logging
import logging.config
from typing import Optional

from .config import settings


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Apply a console logging configuration.

    Parameters
    ----------
    level : Optional[str]
        Log level name. Defaults to ``settings.log_level``.

    Returns
    -------
    logging.Logger
        The package root logger.
    """
    loglevel = (level or settings.log_level).upper()

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": loglevel,
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "iris_rag": {
                "handlers": ["console"],
                "level": loglevel,
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(logging_config)

    # httpx logs every request at INFO
    debug_mode = loglevel == "DEBUG"
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug_mode else logging.WARNING)

    return logging.getLogger("iris_rag")
