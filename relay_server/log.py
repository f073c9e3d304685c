"""
Logging setup for the relay server process.

Every module logs through logging.getLogger(__name__); this only installs
the console handler. Handlers lock around each record, so lines written by
concurrent session threads never interleave.
"""

import logging
import sys
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Configure the `relay_server` logger tree and return it."""
    logger = logging.getLogger("relay_server")
    logger.setLevel(level)

    # Remove existing handlers so repeated setup does not duplicate lines
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)
    logger.propagate = False
    return logger
