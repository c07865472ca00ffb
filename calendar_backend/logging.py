"""Process-wide logging setup for the calendar server."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 1_000_000
LOG_FILE_BACKUPS = 5

_configured = False


def _handlers(log_path: Path | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
        )
    return handlers


def configure_logging(level: str = "INFO", *, log_path: Path | None = None) -> None:
    """Send records to the console, and to a rotating file when ``log_path`` is set.

    Only the first call has an effect, so the CLI and an embedding
    application can both call it.
    """
    global _configured
    if _configured:
        return

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    for handler in _handlers(log_path):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    _configured = True
    logging.getLogger(__name__).debug("Logging at %s, file: %s", level.upper(), log_path or "none")


__all__ = ["configure_logging"]
