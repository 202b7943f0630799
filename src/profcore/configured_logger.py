import logging
import sys

from typing import Optional

from profcore import config

# LogLevel type since logging lib doesn't define its own enum/type for it
LogLevel = int

_FORMAT = logging.Formatter('[%(asctime)s] %(levelname)s: %(message)s',
                            '%Y-%m-%d %H:%M:%S')


def _new_handler(outfile: Optional[str]) -> logging.Handler:
    if outfile is not None:
        return logging.FileHandler(outfile)
    # stdout is reserved for the JSON printed by the command line tool.
    return logging.StreamHandler(sys.stderr)


def new_logger(
    name: str,
    level: Optional[LogLevel] = None,
    outfile: Optional[str] = None,
) -> logging.Logger:
    """
    Create a new configured logger.

    :param name: The name of the logger.
    :param level: The logging level. Defaults to PROFCORE_LOG_LEVEL.
    :param outfile: Log to this file instead of stderr.
    :return: The configured logger.
    """
    if level is None:
        level = config.LOG_LEVEL

    log = logging.getLogger(name)
    log.setLevel(level)
    handler = _new_handler(outfile)
    handler.setLevel(level)
    handler.setFormatter(_FORMAT)
    log.addHandler(handler)
    log.propagate = False
    return log


def set_level(level: LogLevel):
    """Changes the level of the package logger, e.g. for --debug."""
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)


logger = new_logger("profcore", outfile=config.LOG_FILE)
