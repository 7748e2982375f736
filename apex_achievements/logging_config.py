import logging
from logging.config import dictConfig
from typing import Optional

from .config import Settings, get_settings

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
TELEMETRY_LOG_FORMAT = "%(asctime)s EVENT %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Route engine logs and the event stream to stderr at the configured levels."""
    settings = settings or get_settings()
    level = settings.log_level.upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {"format": DEFAULT_LOG_FORMAT},
                "events": {"format": TELEMETRY_LOG_FORMAT},
            },
            "handlers": {
                "default": {"class": "logging.StreamHandler", "formatter": "default"},
                "events": {"class": "logging.StreamHandler", "formatter": "events"},
            },
            "loggers": {
                "apex.telemetry": {
                    "handlers": ["events"],
                    "level": settings.telemetry_log_level.upper(),
                    "propagate": False,
                },
            },
            "root": {"handlers": ["default"], "level": level},
        }
    )

    if settings.debug_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)
        logging.getLogger("sqlalchemy.pool").setLevel(logging.DEBUG)
