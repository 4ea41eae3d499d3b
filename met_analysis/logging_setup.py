import logging
import logging.config


def configure_logging(level="INFO", log_file=None):
    """Configure root logging handlers for the service."""
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "text",
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "text",
            "filename": log_file,
            "encoding": "utf-8",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "text": {
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            },
        },
        "handlers": handlers,
        "root": {"level": str(level).upper(), "handlers": list(handlers)},
        # matplotlib font discovery floods DEBUG
        "loggers": {
            "matplotlib": {"level": "WARNING"},
        },
    })
