import logging.config

from .settings import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def logging_dict(settings: Settings) -> dict:
    """Ledger modules log at LOG_LEVEL; third-party libraries stay at WARNING."""
    level = settings.log_level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"ledger": {"format": LOG_FORMAT}},
        "handlers": {
            "stderr": {
                "class": "logging.StreamHandler",
                "formatter": "ledger",
            }
        },
        "loggers": {
            "ledger": {"level": level},
            "uvicorn.error": {"level": level},
        },
        "root": {"handlers": ["stderr"], "level": "WARNING"},
    }


def setup_logging(settings: Settings) -> None:
    logging.config.dictConfig(logging_dict(settings))
