"""Logging setup for the sheetsync services and command line."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_MAX_BYTES = 1_048_576
LOG_BACKUP_COUNT = 3

# Chatty at INFO; only shown when network logging is requested
NETWORK_LOGGERS = ("aiohttp.access", "aiohttp.client", "aiohttp.server")


def resolve_level(level: str) -> int:
    """Return the numeric level for ``level``; unknown names fall back to INFO."""
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Send sheetsync logs to the console and, optionally, a rotating file.

    Handlers installed by an earlier call are replaced, so configuring twice in
    one process does not duplicate output.

    Parameters
    ----------
    level:
        Log level name such as ``"DEBUG"`` or ``"INFO"``.
    log_path:
        File to append to, rotated at ``LOG_MAX_BYTES``. ``None`` logs to the
        console only.
    log_network:
        Let aiohttp report every request so individual sheet fetches show up.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(resolve_level(level))
    logging.captureWarnings(True)

    network_level = logging.DEBUG if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
