import logging, logging.config

from authcore.config import settings


def setup_logging(level: str | None = None, sql_log: bool | None = None):
    level = (level or settings.log_level).upper()
    sql_log = settings.sql_echo if sql_log is None else sql_log
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                        "datefmt": "%H:%M:%S"},
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default"},
        },
        "loggers": {
            "authcore": {"level": level, "handlers": ["console"], "propagate": False},
            # SQL statements are only echoed when explicitly requested
            "sqlalchemy.engine": {"level": ("INFO" if sql_log else "WARNING"),
                                  "handlers": ["console"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    })
