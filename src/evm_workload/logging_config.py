import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/evm_workload.log")

HANDLERS = ["console", "file"]

# Third-party loggers kept at WARNING: access lines and one INFO line per RPC request
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def build_config(level: str = LOG_LEVEL, filename: str = LOG_FILE) -> dict:
    loggers = {
        # logger name doubles as the service tag, e.g. evm_workload.dispatch
        "evm_workload": {"level": level, "handlers": HANDLERS, "propagate": False},
    }
    loggers.update({name: {"level": "WARNING", "handlers": HANDLERS, "propagate": False} for name in QUIET_LOGGERS})
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "default", "stream": sys.stdout},
            "file": {"class": "logging.FileHandler", "formatter": "default", "filename": filename, "mode": "a"},
        },
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": HANDLERS},
    }


def setup_logging(level: str = LOG_LEVEL, filename: str = LOG_FILE):
    """ Apply the logging configuration. """
    logging.config.dictConfig(build_config(level, filename))
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
