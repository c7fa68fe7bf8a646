"""Central logging setup for the service."""
from __future__ import annotations

import logging

from . import config

_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"

_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def setup_logging(level: str | None = None, log_path: str | None = None) -> logging.Logger:
    """Configure the root logger once; repeated calls only re-level handlers."""

    target = _LEVELS.get((level or config.LOG_LEVEL).upper(), logging.INFO)
    path = config.LOG_PATH if log_path is None else log_path

    root = logging.getLogger()
    root.setLevel(target)
    formatter = logging.Formatter(_FORMAT)

    has_console = False
    has_file = False
    for handler in root.handlers:
        handler.setLevel(target)
        handler.setFormatter(formatter)
        if isinstance(handler, logging.FileHandler):
            has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True

    if not has_console:
        console = logging.StreamHandler()
        console.setLevel(target)
        console.setFormatter(formatter)
        root.addHandler(console)

    if path and not has_file:
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(target)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger = logging.getLogger("premium_bot")
    logger.setLevel(target)
    return logger
