"""Per-dashboard parametrization of the synchronization engine.

Each dashboard reads a sheet with its own column names. A profile names the
identity, status and last-modified columns the engine fingerprints, and the
rules that mark a record as pending or escalated.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Optional, Tuple

from .dataset import Dataset, Record

TRUTHY_FLAGS = frozenset({"yes", "true", "y", "1"})


class UnknownProfileError(KeyError):
    """Raised when a configuration names a profile that does not exist."""


@dataclass(frozen=True)
class SourceProfile:
    """Column mapping and business rules for one kind of sheet.

    Attributes:
        name: Profile identifier used in configuration
        identity_field: Column that uniquely identifies a record
        status_fields: Mutable columns a user acts on (first one is the status)
        modified_field: Column holding the record's last-processed timestamp
        timestamp_field: Column used for recency ordering
        pending_statuses: Lower-cased status values that need attention
        escalation_field: Flag column marking a record as escalated
        escalated_statuses: Lower-cased status values that also count as escalated
    """

    name: str
    identity_field: str
    status_fields: Tuple[str, ...]
    modified_field: str
    timestamp_field: str
    pending_statuses: FrozenSet[str] = frozenset({"pending"})
    escalation_field: Optional[str] = None
    escalated_statuses: FrozenSet[str] = frozenset({"escalated"})
    optional_fields: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def status_field(self) -> str:
        return self.status_fields[0]

    @property
    def fingerprint_fields(self) -> Tuple[str, ...]:
        return (self.identity_field, *self.status_fields, self.modified_field)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(
            name for name in self.fingerprint_fields if name not in self.optional_fields
        )

    def status_of(self, record: Record) -> str:
        return record.get(self.status_field, "").strip().lower()

    def is_pending(self, record: Record) -> bool:
        return self.status_of(record) in self.pending_statuses

    def is_escalated(self, record: Record) -> bool:
        if self.escalation_field:
            flag = record.get(self.escalation_field, "").strip().lower()
            if flag in TRUTHY_FLAGS:
                return True
        return self.status_of(record) in self.escalated_statuses

    def has_pending_items(self, dataset: Dataset) -> bool:
        return any(self.is_pending(record) for record in dataset.records)

    def with_overrides(self, **overrides: object) -> "SourceProfile":
        """Return a copy with the given attributes replaced."""
        return replace(self, **overrides)


SUPPORT_PROFILE = SourceProfile(
    name="support",
    identity_field="Message ID",
    status_fields=("Status", "Approval Status"),
    modified_field="Processed At",
    timestamp_field="Timestamp",
    pending_statuses=frozenset({"pending", "in progress", "new"}),
    escalation_field="Escalation Flag",
    optional_fields=frozenset({"Approval Status", "Processed At"}),
)

SALES_PROFILE = SourceProfile(
    name="sales",
    identity_field="Message ID",
    status_fields=("Status", "Approval"),
    modified_field="Processed At",
    timestamp_field="Timestamp",
    pending_statuses=frozenset({"pending"}),
    escalation_field="Escalation",
)

REPLIER_PROFILE = SourceProfile(
    name="replier",
    identity_field="Request ID",
    status_fields=("Status", "Human Escalation Needed"),
    modified_field="Last Updated",
    timestamp_field="Submission Timestamp",
    pending_statuses=frozenset({"pending", "in progress", "awaiting human"}),
    escalation_field="Human Escalation Needed",
    optional_fields=frozenset({"Human Escalation Needed", "Last Updated"}),
)

PROFILES: Dict[str, SourceProfile] = {
    profile.name: profile
    for profile in (SUPPORT_PROFILE, SALES_PROFILE, REPLIER_PROFILE)
}


def get_profile(name: str) -> SourceProfile:
    try:
        return PROFILES[name.strip().lower()]
    except KeyError:
        raise UnknownProfileError(
            f"Unknown source profile '{name}' (expected one of {sorted(PROFILES)})"
        ) from None
