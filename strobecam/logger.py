import logging
import time
from logging.handlers import TimedRotatingFileHandler

"""
Console Level Options
0 = Only print errors and critical messages to console.
1 = Print all info, errors, and critical messages to console.
2 = Print all debug, info, errors, and critical messages to console.

Log Level Options
0 = Don't create a log file.
1 = Create a log file. File is named strobecam.log.YYYYMMDD.
"""

_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
_MESSAGE_FORMAT = "%(asctime)s.%(msecs)03dZ | %(levelname)-8s | %(name)s | %(message)s"

_CONSOLE_LEVELS = {
    0: logging.ERROR,
    1: logging.INFO,
    2: logging.DEBUG,
}


def _utc_formatter() -> logging.Formatter:
    formatter = logging.Formatter(_MESSAGE_FORMAT, datefmt=_DATE_FORMAT)
    formatter.converter = time.gmtime
    return formatter


def initialize_logger(console_level=1, log_level=0, filename="strobecam.log"):
    """Attach console (and optionally rotating file) handlers to the package logger.

    Calling this more than once is harmless, handlers are only added the first time.
    """
    if console_level not in _CONSOLE_LEVELS:
        raise ValueError("Console level must be an int between 0-2.")
    if log_level not in (0, 1):
        raise ValueError("Log level must be either 0 or 1.")

    logger = logging.getLogger("strobecam")
    logger.setLevel(logging.DEBUG)
    if not logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(_CONSOLE_LEVELS[console_level])
        console.setFormatter(_utc_formatter())
        logger.addHandler(console)

        if log_level == 1:
            trfh = TimedRotatingFileHandler(
                filename, when="midnight", interval=1, backupCount=7
            )
            trfh.setLevel(logging.DEBUG)
            trfh.setFormatter(_utc_formatter())
            logger.addHandler(trfh)
    return logger
