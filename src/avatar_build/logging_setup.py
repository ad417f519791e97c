"""Console logging for the command line and the HTTP service."""

import sys

from loguru import logger

LOG_FORMAT = "[{level}] {message}"


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default handler with a single severity-tagged stderr sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=False)
