"""Constants used across the sheetsync package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "sheetsync"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME
DEFAULT_BACKUP_DIR = Path.home() / ".cache" / APP_NAME / "backups"

DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / APP_NAME / f"{APP_NAME}.log"

DEFAULT_FETCH_TIMEOUT_SECONDS = 8.0

# Response markers the spreadsheet API uses for quota exhaustion
QUOTA_HTTP_STATUS = 429
QUOTA_ERROR_STATUSES = frozenset({"RESOURCE_EXHAUSTED"})

SOURCE_SECTION_PREFIX = "source:"
