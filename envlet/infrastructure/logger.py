"""
Logging setup for envlet.

A single package logger is shared by every module. Verbosity flags of the
command line map onto standard logging levels.
"""

import logging
import sys


LOGGER_NAME = "envlet"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def _build_logger() -> logging.Logger:
    _logger = logging.getLogger(LOGGER_NAME)
    if not _logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y/%m/%d %H:%M:%S"))
        _logger.addHandler(handler)
    _logger.setLevel(logging.WARNING)
    return _logger


logger = _build_logger()


def level_for(debug: bool = False, verbose: bool = False,
              info: bool = False, quiet: bool = False) -> int:
    """Translate the verbosity flags into a logging level."""

    if debug or verbose:
        return logging.DEBUG
    if info:
        return logging.INFO
    if quiet:
        return logging.ERROR
    return logging.WARNING


def configure_logging(debug: bool = False, verbose: bool = False,
                      info: bool = False, quiet: bool = False) -> int:
    level = level_for(debug=debug, verbose=verbose, info=info, quiet=quiet)
    logger.setLevel(level)
    return level


__all__ = ["logger", "configure_logging", "level_for", "LOGGER_NAME"]
