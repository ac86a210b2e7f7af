"""Logging setup for the service entrypoint.

Library modules only call `logging.getLogger(__name__)`; handlers are
attached once here, on the `rag_router` logger, so embedding applications
keep control of their own logging tree.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path

request_id_context: ContextVar[str | None] = ContextVar("request_id", default=None)

_CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - [%(request_id)s] - %(name)s - %(message)s"
_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(filename)s:%(lineno)d - %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamps every record with the current request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_context.get() or "-"
        return True


def setup_logger(
    name: str = "rag_router",
    level: str = "INFO",
    log_file: str | None = None,
) -> logging.Logger:
    """Configure console (and optionally rotating file) output for `name`.

    Calling it again for an already configured logger only updates the level.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger
    logger.propagate = False

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    console.addFilter(RequestIdFilter())
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(RequestIdFilter())
        logger.addHandler(file_handler)

    return logger
