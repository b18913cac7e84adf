"""Quota-aware polling and caching engine for sheet-backed dashboards."""

from .backoff import BackoffController, FailureKind
from .cache import DataCache, ResultOrigin, SyncResult, TTLSettings
from .dataset import Dataset, SchemaMismatchError, decode_values
from .delta import DeltaDetector, compute_fingerprint
from .environment import AsyncioEnvironment, Environment, SignalSource
from .scheduler import NoDataAvailableError, PollIntervals, PollScheduler, SyncStatus

__all__ = [
    "AsyncioEnvironment",
    "BackoffController",
    "DataCache",
    "Dataset",
    "DeltaDetector",
    "Environment",
    "FailureKind",
    "NoDataAvailableError",
    "PollIntervals",
    "PollScheduler",
    "ResultOrigin",
    "SchemaMismatchError",
    "SignalSource",
    "SyncResult",
    "SyncStatus",
    "TTLSettings",
    "compute_fingerprint",
    "decode_values",
]
