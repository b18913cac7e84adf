"""Change detection for fetched datasets.

Only the identity, status and last-modified fields of each record take part in
the fingerprint, so cosmetic edits elsewhere in the sheet never trigger a
consumer update.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Optional, Sequence

from .dataset import Dataset

LOGGER = logging.getLogger(__name__)

_FIELD_SEPARATOR = "\x1f"
_RECORD_SEPARATOR = "\x1e"


def compute_fingerprint(dataset: Dataset, fields: Sequence[str]) -> str:
    """Compute an order-insensitive fingerprint over ``fields`` of every record."""
    projections = sorted(
        _FIELD_SEPARATOR.join(record.get(name, "") for name in fields)
        for record in dataset.records
    )
    blob = _RECORD_SEPARATOR.join(projections).encode("utf-8")
    return hashlib.md5(blob).hexdigest()


class DeltaDetector:
    """Remembers the last fingerprint seen and reports real changes."""

    def __init__(self, fields: Sequence[str]) -> None:
        if not fields:
            raise ValueError("DeltaDetector requires at least one field")
        self._fields = tuple(fields)
        self._fingerprint: Optional[str] = None

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    def has_changed(self, dataset: Dataset) -> bool:
        fingerprint = compute_fingerprint(dataset, self._fields)
        if fingerprint == self._fingerprint:
            return False
        LOGGER.debug(
            "Dataset fingerprint changed %s -> %s (%d records)",
            self._fingerprint,
            fingerprint,
            len(dataset),
        )
        self._fingerprint = fingerprint
        return True

    def reset(self) -> None:
        self._fingerprint = None
