"""Logging setup for the Stream Archive service."""

import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(levelname)s [%(name)s]: %(message)s"


def configure_logging(level: str = "INFO", log_file: str | None = None):
    """Log to the console and, if ``log_file`` is set, to a daily rotated file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                log_file,
                when="midnight",
                backupCount=30,
                encoding="utf-8",
            )
        )
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
