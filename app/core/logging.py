"""
Logging configuration. Modules log through logging.getLogger(__name__); this wires handlers once at startup.
"""

import logging
import logging.config
from typing import Any, Dict, Optional

from app.core.config import settings


def build_logging_config(level: str) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": level,
            },
        },
        "loggers": {
            "app": {"handlers": ["console"], "level": level, "propagate": False},
            "sqlalchemy.engine": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the dictConfig. Safe to call more than once."""
    logging.config.dictConfig(build_logging_config((level or settings.log_level).upper()))
