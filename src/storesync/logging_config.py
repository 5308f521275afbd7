"""
Centralized logging configuration for storesync.

All modules log through the standard logging hierarchy under their
``__name__``; this module installs the handlers once, at process start
(CLI entry point or API startup).
"""

import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(
    level: str = "INFO", log_file: str | None = None, stream: TextIO | None = None
) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (e.g. "INFO", "DEBUG").
        log_file: Optional path of a file to log to in addition to the console.
        stream: Console stream; stdout unless given (the CLI logs to stderr).
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Reduce verbosity from external libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module or component name."""
    return logging.getLogger(name)
