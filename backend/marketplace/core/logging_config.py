# backend/marketplace/core/logging_config.py
"""Process-wide logging setup shared by the API and Celery workers."""

import logging
import logging.config
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once.

    Args:
        level: Log level name; defaults to ``settings.log_level``
    """
    global _configured
    if _configured:
        return

    if level is None:
        from .config import settings

        level = settings.log_level

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
            "loggers": {
                # SQL echo is controlled by settings.database_echo
                "sqlalchemy.engine": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
        }
    )
    _configured = True
