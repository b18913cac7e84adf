"""Durable last-known-good backups for data sources."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FallbackStore:
    """Key/value store that keeps one JSON document per key on disk.

    Writes replace the whole document through a temporary file so a reader
    never observes a partial write. Several processes may share a directory;
    the last writer wins.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        safe_key = _UNSAFE_KEY_CHARS.sub("_", key) or "_"
        return self._directory / f"{safe_key}.json"

    def persist(self, key: str, value: Dict[str, Any]) -> None:
        """Write ``value`` for ``key``; failures are logged, never raised."""
        path = self.path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as stream:
                json.dump(value, stream)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.warning("Failed to save backup for %s: %s", key, exc)

    def recall(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored document for ``key`` or None when unavailable."""
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as stream:
                payload = json.load(stream)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to load backup for %s: %s", key, exc)
            return None

        if not isinstance(payload, dict):
            LOGGER.warning("Ignoring malformed backup for %s", key)
            return None
        return payload

    def remove(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            pass
