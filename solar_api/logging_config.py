# solar_api/logging_config.py
from __future__ import annotations

from logging.config import dictConfig


def setup_logging(level: str = "INFO") -> None:
    """
    Console logging for the service, uvicorn and paho.
    Level comes from LOG_LEVEL.
    """
    level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
            },
            "loggers": {
                "solar_api": {"handlers": ["console"], "level": level, "propagate": False},
                "uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
                "uvicorn.access": {
                    "handlers": ["console"],
                    "level": level,
                    "propagate": False,
                },
            },
            "root": {"handlers": ["console"], "level": level},
        }
    )
