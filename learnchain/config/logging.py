import logging
import logging.config
from typing import Any


def setup_logging(level: str = "INFO") -> dict[str, Any]:
    """Configure logging for the application."""
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
            "alert": {
                "format": "%(asctime)s - ALERT - %(name)s - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
            "alerts": {
                "class": "logging.StreamHandler",
                "formatter": "alert",
                "level": "ERROR",
            },
        },
        "loggers": {
            # Operational alerts (exhausted chain retries, relayer problems)
            "learnchain.alerts": {"level": "ERROR", "handlers": ["alerts"], "propagate": False},
        },
        "root": {"level": level, "handlers": ["console"]},
    }

    logging.config.dictConfig(config)
    return config
