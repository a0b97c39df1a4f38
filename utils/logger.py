import logging
import sys
import os


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(f"popcorn.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        fmt = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
        handler.setFormatter(logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
        logger.propagate = False
    return logger


def set_log_level(level: str) -> None:
    """Apply a level to every popcorn.* logger created so far."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith("popcorn.") and isinstance(logger, logging.Logger):
            logger.setLevel(resolved)
