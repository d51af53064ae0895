"""Central logger configuration.

Every module does: `logger = setup_logger(__name__)`.
"""

import logging
import sys

from src.pandoc_bot.config.settings import settings


def setup_logger(name: str = "pandoc_bot") -> logging.Logger:
    """Create and return a configured logger.

    Handlers are attached once per logger name, so repeated calls (and
    uvicorn --reload) do not double-print.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel((settings.app_log_level or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = False
    return logger
