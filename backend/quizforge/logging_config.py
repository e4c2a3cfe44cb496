import os
from logging.config import dictConfig
from typing import Any, Dict, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
MIGRATION_LOGGERS = ("quizforge.migration", "quizforge.migration_trigger")


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process logging from ``QUIZFORGE_*`` environment flags.

    ``QUIZFORGE_MIGRATION_LOG_LEVEL`` lets operators follow migrations at
    DEBUG (per-chunk commits) without turning on DEBUG everywhere.
    """
    root_level = (level or os.getenv("QUIZFORGE_LOG_LEVEL", "INFO")).upper()
    migration_level = os.getenv("QUIZFORGE_MIGRATION_LOG_LEVEL", root_level).upper()

    loggers: Dict[str, Dict[str, Any]] = {name: {"level": migration_level} for name in MIGRATION_LOGGERS}
    # aiosqlite logs every proxied call at DEBUG.
    loggers["aiosqlite"] = {"level": "INFO"}
    if os.getenv("QUIZFORGE_DEBUG_SQL", "0") == "1":
        loggers["sqlalchemy.engine"] = {"level": "DEBUG"}
        loggers["sqlalchemy.pool"] = {"level": "DEBUG"}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": loggers,
            "root": {
                "handlers": ["default"],
                "level": root_level,
            },
        }
    )
