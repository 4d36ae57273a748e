"""Logging setup: rich console output plus a size-rotated log file."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_MAX_BYTES = 512 * 1024
LOG_BACKUP_COUNT = 2

logger = logging.getLogger("confsync")


def setup_logging(
    log_path: Path | None,
    level: int = logging.INFO,
    console: Console | None = None,
) -> None:
    """Configure the ``confsync`` logger. Safe to call more than once."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(
        RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
    )

    if log_path is None:
        return
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        logger.warning("Cannot write log file %s (%s); logging to console only", log_path, e)
        return
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)


def log_session_start() -> None:
    logger.info("===== confsync session start (pid %d) =====", os.getpid())


def log_session_end() -> None:
    logger.info("===== confsync session end (pid %d) =====", os.getpid())
