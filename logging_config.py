import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    logger.debug("Logging configured at {}", level.upper())
