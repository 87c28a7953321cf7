"""Logging helper shared by every module under src/."""

import logging
import sys

_FORMAT = "%(asctime)s  [%(levelname)s]  %(name)s — %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Return a configured logger with the given name.

    Logging format:  [LEVEL]  logger_name — message

    Parameters
    ----------
    name : str
        Typically __name__ of the calling module.
    level : int
        Logging level (default: logging.INFO).

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT))
        logger.addHandler(handler)
        logger.propagate = False

    logger.setLevel(level)
    return logger


def setup_logging(mode: str = "release") -> None:
    """
    Configure the root logger for the server process.

    ``debug`` mode lowers the level to DEBUG; anything else uses INFO.
    """
    level = logging.DEBUG if mode == "debug" else logging.INFO
    logging.basicConfig(level=level, format=_FORMAT, datefmt=_DATEFMT)

    # Module loggers do not propagate; adjust the ones already created
    for name, existing in list(logging.root.manager.loggerDict.items()):
        if name.startswith("src.") and isinstance(existing, logging.Logger):
            existing.setLevel(level)
