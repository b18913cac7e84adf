"""Priority ordering and bucketing for dashboard lists."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Tuple

from .dataset import Record
from .profiles import SourceProfile

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
)


class Priority(IntEnum):
    ESCALATED = 0
    NEEDS_ACTION = 1
    OTHER = 2


BUCKET_NAMES = {
    Priority.ESCALATED: "escalated",
    Priority.NEEDS_ACTION: "needs_action",
    Priority.OTHER: "other",
}


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 or ``YYYY-MM-DD HH:MM:SS`` style sheet timestamps.

    Naive values are assumed to be UTC. Returns None when unparsable.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def priority_of(record: Record, profile: SourceProfile) -> Priority:
    if profile.is_escalated(record):
        return Priority.ESCALATED
    if profile.is_pending(record):
        return Priority.NEEDS_ACTION
    return Priority.OTHER


def _sort_key(record: Record, profile: SourceProfile) -> Tuple[int, int, float]:
    stamp = parse_timestamp(record.get(profile.timestamp_field))
    if stamp is None:
        return (priority_of(record, profile), 1, 0.0)
    return (priority_of(record, profile), 0, -stamp.timestamp())


def sort_by_priority(records: Iterable[Record], profile: SourceProfile) -> List[Record]:
    """Order records escalated first, then needs-action, then the rest.

    Within a bucket the newest record comes first; records without a
    parsable timestamp follow, keeping their input order.
    """
    return sorted(records, key=lambda record: _sort_key(record, profile))


def group_by_priority(
    records: Iterable[Record], profile: SourceProfile
) -> Dict[str, List[Record]]:
    """Bucket records by priority, each bucket in :func:`sort_by_priority` order."""
    groups: Dict[str, List[Record]] = {name: [] for name in BUCKET_NAMES.values()}
    for record in sort_by_priority(records, profile):
        groups[BUCKET_NAMES[priority_of(record, profile)]].append(record)
    return groups
