"""
Logger setup shared by all services
"""

import logging
import os
import sys

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(name: str = "bizplan", level: str = None) -> logging.Logger:
    """
    Get a configured logger

    Args:
        name: Logger name (module __name__ or service name)
        level: Optional level override, defaults to LOG_LEVEL env

    Returns:
        logging.Logger with a single stream handler
    """
    logger = logging.getLogger(name)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    return logger
