import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LEDGERBENCH_LOG_FILE", "/tmp/ledgerbench.log")

HANDLERS = ["console", "file"]

# Third-party loggers held at WARNING
QUIET = ("httpx", "uvicorn.access", "websockets", "xrpl")


def _logger(level: str) -> dict:
    return {"level": level, "handlers": HANDLERS, "propagate": False}


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "bench": {
            "format": "%(asctime)s.%(msecs)03d %(levelname)-7s [%(name)s] %(message)s",
            "datefmt": "%H:%M:%S",
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "bench", "stream": sys.stderr},
        "file": {
            "class": "logging.FileHandler",
            "formatter": "bench",
            "filename": LOG_FILE,
            "mode": "a",
            "delay": True,
        },
    },
    "loggers": {"ledgerbench": _logger(LOG_LEVEL), **{name: _logger("WARNING") for name in QUIET}},
    "root": {"level": "WARNING", "handlers": HANDLERS},
}


def setup_logging(level: str | None = None):
    """Install the handlers; ``level`` overrides ``LOG_LEVEL`` for ledgerbench's own loggers."""
    if level:
        LOGGING_CONFIG["loggers"]["ledgerbench"]["level"] = level.upper()
    logging.config.dictConfig(LOGGING_CONFIG)
