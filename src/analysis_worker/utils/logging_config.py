"""
Logging configuration for the analysis worker.

Modules obtain loggers through ``get_logger(__name__)`` so that everything
lives under the ``analysis_worker`` namespace. ``setup_logging`` installs a
single stderr handler; stdout is reserved for the JSON-lines transport.
"""

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_HANDLER_NAME = "analysis_worker_stderr"


def get_logger(name: str) -> logging.Logger:
    """Return a logger for *name* (normally the caller's ``__name__``)."""
    return logging.getLogger(name)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    fmt: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Calling this more than once replaces the level and format but never
    installs a second handler.

    Args:
        level: Logging level as int or name ("DEBUG", "INFO", ...)
        fmt: Optional log format string

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    package_logger = logging.getLogger("analysis_worker")
    package_logger.setLevel(level)

    handler = next(
        (h for h in package_logger.handlers if h.get_name() == _HANDLER_NAME),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        package_logger.addHandler(handler)
    handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
    package_logger.propagate = False
    return package_logger
