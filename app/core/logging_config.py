"""
Logging setup shared by the API process and the scripts.
"""
import logging

from app.core.config import get_log_level

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def setup_logging(level: str | None = None) -> logging.Logger:
    """
    Configure root logging to the console.

    Safe to call more than once: handlers are only attached the first time,
    later calls just adjust the level.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level or get_log_level())

    if not any(getattr(handler, "_closet_billing", False) for handler in root_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._closet_billing = True
        root_logger.addHandler(handler)

    return logging.getLogger("app")
